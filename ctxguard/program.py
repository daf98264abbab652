"""
ctxguard.program
================

The program-graph interface consumed by the explorer, and the in-memory
model that both front-ends (:mod:`ctxguard.llvm_ir` and
:mod:`ctxguard.dump_loader`) populate.

The explorer only ever talks to :class:`ProgramGraph`.  It never looks at
instruction text or Cppcheck tokens; all it needs is

* a lookup of functions by symbol name,
* for a function: does it have a body, and which block is its entry,
* for a block: its successor blocks and its call sites, in order,
* for a call site: the statically resolved callee, if any.

Public API
----------
    ProgramGraph     - abstract provider interface
    Function         - a function handle (symbol + optional body)
    BasicBlock       - a basic block handle
    CallSite         - a call instruction inside a block
    ProgramModel     - concrete, mutable ProgramGraph

Typical usage::

    from ctxguard.program import ProgramModel

    prog = ProgramModel("example")
    handler = prog.define("irq_handler")
    entry = handler.add_block("entry")
    entry.add_call(prog.declare("mutex_acquire"))

Identity
--------
Handles compare by identity.  Two functions may share a display name
(C++ overloads that render the same after demangling, or ``static``
functions from different translation units), so nothing in the model is
keyed on display names.
"""

from __future__ import annotations

import abc
from collections import OrderedDict
from typing import Dict, Iterator, List, Optional, Sequence


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------

class ProgramGraph(abc.ABC):
    """What the explorer needs from a program image."""

    @abc.abstractmethod
    def lookup_function(self, name: str) -> Optional["Function"]:
        """Return the function whose raw symbol is *name*, or ``None``."""

    @abc.abstractmethod
    def functions(self) -> Iterator["Function"]:
        """Iterate over all functions in a stable order."""

    @abc.abstractmethod
    def has_body(self, function: "Function") -> bool:
        ...

    @abc.abstractmethod
    def entry_block(self, function: "Function") -> "BasicBlock":
        """The first block of *function*.  Only defined if it has a body."""

    @abc.abstractmethod
    def successors(self, block: "BasicBlock") -> Sequence["BasicBlock"]:
        ...

    @abc.abstractmethod
    def call_sites_in(self, block: "BasicBlock") -> Sequence["CallSite"]:
        ...

    @abc.abstractmethod
    def resolved_target(self, site: "CallSite") -> Optional["Function"]:
        """The statically known callee of *site*, ``None`` if indirect."""


# ---------------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------------

class CallSite:
    """A call instruction.

    Attributes
    ----------
    target : Function or None
        The callee when the call is direct; ``None`` for calls through a
        pointer, inline assembly and other unresolvable forms.
    text : str
        Short description of the call (callee spelling or instruction text).
    file, line : location of the call, when known.
    """

    __slots__ = ("target", "text", "file", "line")

    def __init__(
        self,
        target: Optional["Function"],
        text: str = "",
        file: Optional[str] = None,
        line: Optional[int] = None,
    ) -> None:
        self.target = target
        self.text = text
        self.file = file
        self.line = line

    @property
    def is_resolved(self) -> bool:
        return self.target is not None

    def __repr__(self) -> str:
        callee = self.target.symbol if self.target is not None else "<indirect>"
        return f"CallSite({callee})"


class BasicBlock:
    """A basic block: ordered call sites plus ordered successor edges."""

    __slots__ = ("name", "function", "call_sites", "successors")

    def __init__(self, name: str, function: "Function") -> None:
        self.name = name
        self.function = function
        self.call_sites: List[CallSite] = []
        self.successors: List[BasicBlock] = []

    def add_call(
        self,
        target: Optional["Function"],
        text: str = "",
        file: Optional[str] = None,
        line: Optional[int] = None,
    ) -> CallSite:
        site = CallSite(target, text or (target.symbol if target else ""), file, line)
        self.call_sites.append(site)
        return site

    def add_successor(self, block: "BasicBlock") -> None:
        self.successors.append(block)

    def __repr__(self) -> str:
        return f"BasicBlock({self.function.symbol}:{self.name})"


class Function:
    """A function handle.

    Attributes
    ----------
    symbol : str
        Raw linkage name (mangled for C++ in LLVM IR, plain in Cppcheck).
    blocks : list[BasicBlock]
        Body blocks in layout order; empty for declarations.
    origin : object or None
        Front-end specific object this handle was made from (for example
        the ``cppcheckdata.Function``).  Symbol resolvers may consult it.
    file, line : definition location, when known.
    """

    __slots__ = ("symbol", "blocks", "origin", "file", "line", "_block_index")

    def __init__(
        self,
        symbol: str,
        origin: object = None,
        file: Optional[str] = None,
        line: Optional[int] = None,
    ) -> None:
        self.symbol = symbol
        self.blocks: List[BasicBlock] = []
        self.origin = origin
        self.file = file
        self.line = line
        self._block_index: Dict[str, BasicBlock] = {}

    @property
    def has_body(self) -> bool:
        return bool(self.blocks)

    @property
    def entry(self) -> Optional[BasicBlock]:
        return self.blocks[0] if self.blocks else None

    def add_block(self, name: Optional[str] = None) -> BasicBlock:
        """Append a new block.  The first block added is the entry block."""
        if name is None:
            name = f"bb{len(self.blocks)}"
        block = BasicBlock(name, self)
        self.blocks.append(block)
        self._block_index[name] = block
        return block

    def block(self, name: str) -> Optional[BasicBlock]:
        return self._block_index.get(name)

    def get_or_add_block(self, name: str) -> BasicBlock:
        """Look up *name*, creating a detached placeholder if unseen.

        Forward branch targets are created here and appended to
        :attr:`blocks` when first referenced.
        """
        existing = self._block_index.get(name)
        if existing is not None:
            return existing
        return self.add_block(name)

    def __repr__(self) -> str:
        kind = "define" if self.blocks else "declare"
        return f"Function({self.symbol!r}, {kind}, blocks={len(self.blocks)})"


# ---------------------------------------------------------------------------
# In-memory model
# ---------------------------------------------------------------------------

class ProgramModel(ProgramGraph):
    """A whole-program image held in memory.

    Functions are kept in insertion order.  ``define`` and ``declare`` are
    idempotent per symbol: declaring a symbol that is later defined yields
    the same handle, so call sites recorded before the definition was seen
    stay attached to it.
    """

    def __init__(self, name: str = "<program>") -> None:
        self.name = name
        self._functions: "OrderedDict[str, Function]" = OrderedDict()
        # first function registered for each symbol
        self._symbols: Dict[str, Function] = {}

    # ----- construction -----------------------------------------------------

    def declare(
        self,
        symbol: str,
        origin: object = None,
        file: Optional[str] = None,
        line: Optional[int] = None,
    ) -> Function:
        """Return the function for *symbol*, creating a declaration."""
        fn = self.lookup_function(symbol)
        if fn is None:
            fn = self.add_function(Function(symbol, origin=origin, file=file, line=line))
        elif fn.origin is None and origin is not None:
            fn.origin = origin
        return fn

    def define(
        self,
        symbol: str,
        origin: object = None,
        file: Optional[str] = None,
        line: Optional[int] = None,
    ) -> Function:
        """Return the function for *symbol*; callers then add its blocks."""
        fn = self.declare(symbol, origin=origin, file=file, line=line)
        if file is not None:
            fn.file = file
        if line is not None:
            fn.line = line
        return fn

    def add_function(self, function: Function, key: Optional[str] = None) -> Function:
        """Register an externally built handle under *key* (default: symbol).

        Front-ends whose symbols are not unique (``static`` functions,
        overloads) pass a unique *key*; :meth:`lookup_function` by symbol
        then finds the first function registered with that symbol.
        """
        self._functions[key or function.symbol] = function
        self._symbols.setdefault(function.symbol, function)
        return function

    # ----- ProgramGraph -----------------------------------------------------

    def lookup_function(self, name: str) -> Optional[Function]:
        fn = self._symbols.get(name)
        if fn is None:
            fn = self._functions.get(name)
        return fn

    def functions(self) -> Iterator[Function]:
        return iter(list(self._functions.values()))

    def has_body(self, function: Function) -> bool:
        return function.has_body

    def entry_block(self, function: Function) -> BasicBlock:
        if not function.blocks:
            raise ValueError(f"{function.symbol} has no body")
        return function.blocks[0]

    def successors(self, block: BasicBlock) -> Sequence[BasicBlock]:
        return block.successors

    def call_sites_in(self, block: BasicBlock) -> Sequence[CallSite]:
        return block.call_sites

    def resolved_target(self, site: CallSite) -> Optional[Function]:
        return site.target

    # ----- statistics -------------------------------------------------------

    def statistics(self) -> Dict[str, int]:
        fns = list(self._functions.values())
        sites = [s for f in fns for b in f.blocks for s in b.call_sites]
        return {
            "functions": len(fns),
            "defined_functions": sum(1 for f in fns if f.has_body),
            "declarations": sum(1 for f in fns if not f.has_body),
            "blocks": sum(len(f.blocks) for f in fns),
            "call_sites": len(sites),
            "unresolved_calls": sum(1 for s in sites if s.target is None),
        }

    def __len__(self) -> int:
        return len(self._functions)

    def __repr__(self) -> str:
        return f"ProgramModel({self.name!r}, functions={len(self._functions)})"
