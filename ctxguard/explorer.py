"""
ctxguard.explorer
=================

Call-graph exploration: starting from an entry function, walk every
reachable basic block depth-first, descend into every statically resolved
callee, stop at sink functions and report every black-listed function that
is reached, together with the call chain that reached it.

Semantics
---------
For a function ``F``:

1. already visited → success, nothing else happens;
2. display name is a sink → success; ``F`` is neither pushed on the chain
   nor marked visited, so every later encounter is re-checked as a sink;
3. the display name is pushed on the chain;
4. display name is black-listed → the chain is reported, popped, and the
   call fails; ``F`` is not marked visited;
5. otherwise ``F`` is marked visited and, if it has a body, its entry
   block is traversed;
6. the name is popped and the accumulated result returned.

For a block: visited → success; otherwise mark it, examine every call site
in order, then every successor in order.  One failure anywhere fails the
whole traversal, but exploration always runs to completion.

Memoization is first-visit-wins.  A function is marked visited before its
body is explored and never un-marked, so a function whose first
exploration found nothing (for instance because the only offending path
went through a block already visited from elsewhere) is trusted from then
on.  A violation below a visited function is therefore reported once, on
the path that reached it first.

Implementation
--------------
Each function and block visit is a generator frame that *yields* the frame
of the child it wants explored and receives the child's result.  A small
driver keeps these frames on an explicit stack, so very deep call graphs
do not run into the interpreter's recursion limit while the visiting order
stays exactly that of the recursive formulation.
"""

from __future__ import annotations

import logging
from typing import Generator, List, Optional, Set

from ctxguard.policy import Policy
from ctxguard.program import BasicBlock, Function, ProgramGraph
from ctxguard.reporter import ChainReporter
from ctxguard.symbols import IdentityResolver, SymbolResolver

logger = logging.getLogger(__name__)

# A frame yields child frames and returns the verdict of its subtree.
Frame = Generator["Frame", bool, bool]


class CallGraphExplorer:
    """Depth-first reachability check over one program image.

    Parameters
    ----------
    program : ProgramGraph
        The call graph / control-flow provider.
    policy : Policy
        Sink and blacklist names (entry points are passed to
        :meth:`explore`).
    resolver : SymbolResolver, optional
        Display-name mapping; identity by default.
    reporter : ChainReporter, optional
        Receives witnessing chains; writes to stderr by default.

    The visited sets and the call chain belong to this instance.  Reusing
    an instance for a second entry point keeps the first run's visited
    state, so functions explored then are not explored (or reported)
    again; use :meth:`reset` or a fresh instance for isolated runs.
    """

    def __init__(
        self,
        program: ProgramGraph,
        policy: Policy,
        resolver: Optional[SymbolResolver] = None,
        reporter: Optional[ChainReporter] = None,
    ) -> None:
        self.program = program
        self.policy = policy
        self.resolver = resolver if resolver is not None else IdentityResolver()
        self.reporter = reporter if reporter is not None else ChainReporter()
        self.visited_functions: Set[Function] = set()
        self.visited_blocks: Set[BasicBlock] = set()
        self.call_chain: List[str] = []
        self.skipped_calls = 0

    # ----- public API -------------------------------------------------------

    def explore(self, entry_name: str) -> bool:
        """Return ``False`` iff a black-listed function is reachable.

        An entry name that does not exist in the program is a vacuous
        success: the context it opens is simply absent from this image.
        """
        entry = self.resolve_entry(entry_name)
        if entry is None:
            logger.info("Entry point %s not present; nothing to check", entry_name)
            return True
        logger.debug("Exploring from %s", entry_name)
        passed = self.traverse_function(entry)
        logger.debug(
            "Finished %s: passed=%s functions=%d blocks=%d skipped_calls=%d",
            entry_name, passed, len(self.visited_functions),
            len(self.visited_blocks), self.skipped_calls,
        )
        return passed

    def resolve_entry(self, name: str) -> Optional[Function]:
        """Find the entry function by raw symbol, then by display name."""
        fn = self.program.lookup_function(name)
        if fn is not None:
            return fn
        for candidate in self.program.functions():
            if self.resolver.display_name(candidate) == name:
                return candidate
        return None

    def traverse_function(self, function: Function) -> bool:
        return self._drive(self._function_frame(function))

    def traverse_block(self, block: BasicBlock) -> bool:
        return self._drive(self._block_frame(block))

    def reset(self) -> None:
        """Forget all visited state."""
        self.visited_functions.clear()
        self.visited_blocks.clear()
        self.call_chain.clear()
        self.skipped_calls = 0

    # ----- frames -----------------------------------------------------------

    def _function_frame(self, function: Function) -> Frame:
        if function in self.visited_functions:
            return True

        name = self.resolver.display_name(function)
        if self.policy.is_sink(name):
            return True

        self.call_chain.append(name)
        if self.policy.is_blacklisted(name):
            self.reporter.report(self.call_chain)
            self.call_chain.pop()
            return False

        self.visited_functions.add(function)
        passed = True
        if self.program.has_body(function):
            passed &= yield self._block_frame(self.program.entry_block(function))

        self.call_chain.pop()
        return passed

    def _block_frame(self, block: BasicBlock) -> Frame:
        if block in self.visited_blocks:
            return True
        self.visited_blocks.add(block)

        passed = True
        for site in self.program.call_sites_in(block):
            target = self.program.resolved_target(site)
            if target is None:
                self.skipped_calls += 1
                continue
            passed &= yield self._function_frame(target)

        for succ in self.program.successors(block):
            passed &= yield self._block_frame(succ)
        return passed

    # ----- driver -----------------------------------------------------------

    @staticmethod
    def _drive(root: Frame) -> bool:
        stack: List[Frame] = [root]
        value: Optional[bool] = None
        result = True
        while stack:
            try:
                child = stack[-1].send(value)
            except StopIteration as stop:
                stack.pop()
                value = result = stop.value
                continue
            stack.append(child)
            value = None
        return result
