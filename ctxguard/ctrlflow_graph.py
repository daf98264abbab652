"""
ctxguard.ctrlflow_graph
=======================

Intraprocedural control flow graphs built from the token stream of a
Cppcheck dump.  The Cppcheck front-end (:mod:`ctxguard.dump_loader`) turns
each CFG node into a basic block and scans its tokens for call sites.

A CFG is a directed graph whose nodes are straight-line token runs and
whose edges carry a control-flow kind (fall-through, branch-true,
branch-false, back-edge, switch-case, ...).  Successor order is the order
control may take: the true branch before the false branch, the loop body
before the loop exit, switch cases in source order.

Public API
----------
    CFGNode          - a single basic block
    CFGEdge          - a directed edge between two CFGNodes
    CFG              - the control flow graph for one function
    build_cfg        - build a CFG from a cppcheckdata.Function + Configuration
    build_all_cfgs   - build CFGs for every function in a Configuration

Typical usage::

    import cppcheckdata
    from ctxguard.ctrlflow_graph import build_all_cfgs

    data = cppcheckdata.parsedump("foo.c.dump")
    for cfg_config in data.configurations:
        for func, cfg in build_all_cfgs(cfg_config).items():
            print(func.name, cfg)

Implementation notes
--------------------
* The tokens from ``scope.bodyStart`` to ``scope.bodyEnd`` are walked once
  and partitioned into blocks.  Control-flow keywords are only recognised
  at the start of a statement, so ``a ? b : c`` is not mistaken for a
  label.
* Braced groups that do not open a statement (initialiser lists, lambda
  bodies, ``try``/``catch`` bodies) are kept as opaque token runs in the
  current block.
* ``goto`` support is best-effort: labels are resolved inside the same
  function; an unknown label jumps to the exit block.
"""

from __future__ import annotations

import enum
from collections import OrderedDict
from typing import Dict, List, Optional, Set, Tuple

# ---------------------------------------------------------------------------
# Edge kinds
# ---------------------------------------------------------------------------


class EdgeKind(enum.Enum):
    """Classification of a CFG edge."""

    FALL_THROUGH = "fall-through"
    BRANCH_TRUE = "branch-true"
    BRANCH_FALSE = "branch-false"
    BACK_EDGE = "back-edge"
    BREAK = "break"
    CONTINUE = "continue"
    RETURN = "return"
    GOTO = "goto"
    SWITCH_CASE = "switch-case"
    SWITCH_DEFAULT = "switch-default"


# ---------------------------------------------------------------------------
# CFGNode / CFGEdge
# ---------------------------------------------------------------------------

class CFGNode:
    """A basic block in the CFG.

    Attributes
    ----------
    id : int
        Index of the node inside its CFG (entry is 0, exit is 1).
    tokens : list
        ``cppcheckdata.Token`` objects of this block, in source order.
        Empty for the synthetic entry and exit nodes.
    kind : str
        ``"entry"``, ``"exit"``, ``"body"``, ``"if-cond"``, ``"loop-cond"``,
        ``"switch-dispatch"``, ``"case"``, ``"label"``, ...
    successors, predecessors : list[CFGEdge]
    """

    __slots__ = ("id", "tokens", "kind", "successors", "predecessors")

    def __init__(self, node_id: int, kind: str = "body") -> None:
        self.id = node_id
        self.tokens: List = []
        self.kind = kind
        self.successors: List[CFGEdge] = []
        self.predecessors: List[CFGEdge] = []

    def label(self) -> str:
        """Compact description: location and the first few tokens."""
        if not self.tokens:
            return f"[{self.kind}]"
        text = " ".join(t.str for t in self.tokens[:6])
        if len(self.tokens) > 6:
            text += " ..."
        first = self.tokens[0]
        if getattr(first, "file", None) and getattr(first, "linenr", None):
            return f"{first.file}:{first.linenr} {text}"
        return text

    def __repr__(self) -> str:
        return f"CFGNode(id={self.id}, kind={self.kind!r}, ntokens={len(self.tokens)})"


class CFGEdge:
    """A directed edge; *label* holds e.g. the case constant."""

    __slots__ = ("src", "dst", "kind", "label")

    def __init__(
        self,
        src: CFGNode,
        dst: CFGNode,
        kind: EdgeKind = EdgeKind.FALL_THROUGH,
        label: Optional[str] = None,
    ) -> None:
        self.src = src
        self.dst = dst
        self.kind = kind
        self.label = label

    def __repr__(self) -> str:
        return f"CFGEdge(BB{self.src.id} -> BB{self.dst.id}, kind={self.kind.value!r})"


# ---------------------------------------------------------------------------
# CFG
# ---------------------------------------------------------------------------

class CFG:
    """Intraprocedural control flow graph for a single function.

    Attributes
    ----------
    function : cppcheckdata.Function
    entry : CFGNode
        Synthetic entry block (no tokens).
    exit : CFGNode
        Synthetic exit block (no tokens).
    nodes : list[CFGNode]
        All blocks in creation order, entry and exit first.
    edges : list[CFGEdge]
    """

    def __init__(self, function) -> None:
        self.function = function
        self.nodes: List[CFGNode] = []
        self.edges: List[CFGEdge] = []
        self.entry = self.new_node("entry")
        self.exit = self.new_node("exit")

    def new_node(self, kind: str = "body") -> CFGNode:
        node = CFGNode(len(self.nodes), kind)
        self.nodes.append(node)
        return node

    def add_edge(
        self,
        src: CFGNode,
        dst: CFGNode,
        kind: EdgeKind = EdgeKind.FALL_THROUGH,
        label: Optional[str] = None,
    ) -> CFGEdge:
        e = CFGEdge(src, dst, kind=kind, label=label)
        self.edges.append(e)
        src.successors.append(e)
        dst.predecessors.append(e)
        return e

    def successors_of(self, node: CFGNode) -> List[CFGNode]:
        return [e.dst for e in node.successors]

    def predecessors_of(self, node: CFGNode) -> List[CFGNode]:
        return [e.src for e in node.predecessors]

    def reachable_from(self, start: CFGNode) -> Set[CFGNode]:
        visited: Set[CFGNode] = set()
        worklist = [start]
        while worklist:
            n = worklist.pop()
            if n in visited:
                continue
            visited.add(n)
            worklist.extend(e.dst for e in n.successors)
        return visited

    def __repr__(self) -> str:
        name = getattr(self.function, "name", "?")
        return f"CFG({name}, nodes={len(self.nodes)}, edges={len(self.edges)})"


# ═══════════════════════════════════════════════════════════════════════════
# Builder
# ═══════════════════════════════════════════════════════════════════════════

def _tok_str(tok) -> str:
    if tok is None:
        return ""
    return tok.str or ""


def _is_label(tok) -> bool:
    nxt = tok.next
    return (
        bool(getattr(tok, "isName", False))
        and nxt is not None
        and nxt.str == ":"
        and tok.str not in ("case", "default")
    )


class _SwitchContext:
    __slots__ = ("dispatch", "has_default")

    def __init__(self, dispatch: CFGNode) -> None:
        self.dispatch = dispatch
        self.has_default = False


class _CFGBuilder:
    """Constructs the CFG of one function body.

    Every ``_process_*`` method takes the token to start at, the token that
    ends the enclosing region, the live block (``None`` after a jump) and
    the jump targets in force, and returns ``(next_token, live_block)``.
    """

    def __init__(self, function, scope) -> None:
        self.function = function
        self.scope = scope
        self.cfg = CFG(function)
        self._labels: Dict[str, CFGNode] = {}
        self._pending_gotos: List[Tuple[CFGNode, str]] = []

    def _new_block(self, kind: str = "body") -> CFGNode:
        return self.cfg.new_node(kind)

    def _edge(self, src, dst, kind=EdgeKind.FALL_THROUGH, label=None):
        return self.cfg.add_edge(src, dst, kind=kind, label=label)

    # ----- token scanning helpers -------------------------------------------

    @staticmethod
    def _collect_tokens_until(tok, stop_strs: Set[str], limit_tok=None) -> Tuple[List, Optional[object]]:
        """Collect tokens up to one of *stop_strs*; bracketed groups are taken whole."""
        collected = []
        while tok is not None and tok is not limit_tok:
            if tok.str in stop_strs:
                return collected, tok
            if tok.str in ("(", "[", "{") and tok.link is not None:
                end = tok.link
                while tok is not end:
                    collected.append(tok)
                    tok = tok.next
            collected.append(tok)
            tok = tok.next
        return collected, None

    @staticmethod
    def _skip_past_semicolon(tok, limit_tok=None):
        while tok is not None and tok is not limit_tok:
            if tok.str == ";":
                return tok.next
            if tok.str in ("(", "[", "{") and tok.link is not None:
                tok = tok.link
            tok = tok.next
        return limit_tok

    @staticmethod
    def _paren_contents(paren) -> Tuple[List, object]:
        """Tokens strictly inside ``( ... )`` and the token after ``)``."""
        inner = []
        if paren is None or paren.str != "(" or paren.link is None:
            return inner, paren
        tok = paren.next
        while tok is not paren.link:
            inner.append(tok)
            tok = tok.next
        return inner, paren.link.next

    def _statement_end(self, tok, limit_tok):
        """The token following the single statement that starts at *tok*."""
        if tok is None or tok is limit_tok:
            return limit_tok
        s = tok.str
        if s == "{" and tok.link is not None:
            return tok.link.next
        if s == "if":
            _, body = self._paren_contents(tok.next)
            after = self._statement_end(body, limit_tok)
            if after is not None and after is not limit_tok and after.str == "else":
                after = self._statement_end(after.next, limit_tok)
            return after
        if s in ("while", "for", "switch"):
            _, body = self._paren_contents(tok.next)
            return self._statement_end(body, limit_tok)
        if s == "do":
            after = self._statement_end(tok.next, limit_tok)
            if after is not None and after is not limit_tok and after.str == "while":
                return self._skip_past_semicolon(after, limit_tok)
            return after
        if _is_label(tok):
            return self._statement_end(tok.next.next, limit_tok)
        return self._skip_past_semicolon(tok, limit_tok)

    # ----- main build -------------------------------------------------------

    def build(self) -> CFG:
        body_start = self.scope.bodyStart
        body_end = self.scope.bodyEnd

        first_block = self._new_block("body")
        self._edge(self.cfg.entry, first_block)

        after_block = self._process_compound(
            body_start.next, body_end, first_block, None, None, None,
        )
        if after_block is not None:
            self._edge(after_block, self.cfg.exit)

        for goto_block, lbl_name in self._pending_gotos:
            target = self._labels.get(lbl_name)
            self._edge(goto_block, target if target is not None else self.cfg.exit, EdgeKind.GOTO)
        return self.cfg

    def _process_body(self, tok, limit_tok, block, brk, cont, switch):
        """Process the body of a control statement as its own region."""
        end = self._statement_end(tok, limit_tok)
        if tok is not None and tok.str == "{" and tok.link is not None:
            live = self._process_compound(tok.next, tok.link, block, brk, cont, switch)
        else:
            live = self._process_compound(tok, end, block, brk, cont, switch)
        return end, live

    def _process_compound(self, tok, limit_tok, current, brk, cont, switch) -> Optional[CFGNode]:
        """Process the statements from *tok* up to *limit_tok*.

        Returns the block that is live afterwards, or ``None`` if every
        path left through ``return``/``break``/``continue``/``goto``.
        """
        at_start = True
        while tok is not None and tok is not limit_tok:
            s = _tok_str(tok)

            if at_start:
                if switch is not None and s in ("case", "default"):
                    tok, current = self._process_case(tok, limit_tok, current, switch)
                    continue

                if _is_label(tok):
                    label_block = self._new_block("label")
                    if current is not None:
                        self._edge(current, label_block)
                    self._labels[s] = label_block
                    current = label_block
                    tok = tok.next.next
                    continue

                if s == "return":
                    current = current if current is not None else self._new_block("unreachable")
                    ret_toks, semi = self._collect_tokens_until(tok, {";"}, limit_tok)
                    current.tokens.extend(ret_toks)
                    if semi is not None:
                        current.tokens.append(semi)
                    current.kind = "return"
                    self._edge(current, self.cfg.exit, EdgeKind.RETURN)
                    tok = semi.next if semi is not None else limit_tok
                    current = None
                    continue

                if s in ("break", "continue"):
                    if current is not None:
                        current.tokens.append(tok)
                        target = brk if s == "break" else cont
                        kind = EdgeKind.BREAK if s == "break" else EdgeKind.CONTINUE
                        self._edge(current, target if target is not None else self.cfg.exit, kind)
                    tok = self._skip_past_semicolon(tok.next, limit_tok)
                    current = None
                    continue

                if s == "goto":
                    label_tok = tok.next
                    if current is not None:
                        current.tokens.append(tok)
                        self._pending_gotos.append((current, _tok_str(label_tok)))
                    tok = self._skip_past_semicolon(tok.next, limit_tok)
                    current = None
                    continue

                handler = {
                    "if": self._process_if,
                    "while": self._process_while,
                    "for": self._process_for,
                    "do": self._process_do_while,
                    "switch": self._process_switch,
                }.get(s)
                if handler is not None:
                    tok, current = handler(tok, limit_tok, current, brk, cont, switch)
                    continue

                if s == "{" and tok.link is not None:
                    current = self._process_compound(tok.next, tok.link, current, brk, cont, switch)
                    tok = tok.link.next
                    continue

            # ---- ordinary statement token ----------------------------------
            if current is None:
                current = self._new_block("unreachable")
            if s == "{" and tok.link is not None:
                end = tok.link
                while tok is not end:
                    current.tokens.append(tok)
                    tok = tok.next
            current.tokens.append(tok)
            at_start = tok.str in (";", "}")
            tok = tok.next
        return current

    # ----- case / default ---------------------------------------------------

    def _process_case(self, tok, limit_tok, current, switch):
        is_default = tok.str == "default"
        block = self._new_block("case")
        label_toks, colon = self._collect_tokens_until(tok.next, {":"}, limit_tok)
        block.tokens.append(tok)
        block.tokens.extend(label_toks)
        if is_default:
            switch.has_default = True
            self._edge(switch.dispatch, block, EdgeKind.SWITCH_DEFAULT)
        else:
            label = " ".join(t.str for t in label_toks)
            self._edge(switch.dispatch, block, EdgeKind.SWITCH_CASE, label)
        if current is not None:
            self._edge(current, block)
        return (colon.next if colon is not None else limit_tok), block

    # ----- if / else --------------------------------------------------------

    def _process_if(self, tok, limit_tok, current, brk, cont, switch):
        cond = self._new_block("if-cond")
        if current is not None:
            self._edge(current, cond)
        cond_toks, tok = self._paren_contents(tok.next)
        cond.tokens.extend(cond_toks)

        true_block = self._new_block("if-true")
        self._edge(cond, true_block, EdgeKind.BRANCH_TRUE)
        tok, true_exit = self._process_body(tok, limit_tok, true_block, brk, cont, switch)

        has_else = tok is not None and tok is not limit_tok and tok.str == "else"
        false_exit = None
        if has_else:
            false_block = self._new_block("if-false")
            self._edge(cond, false_block, EdgeKind.BRANCH_FALSE)
            tok, false_exit = self._process_body(tok.next, limit_tok, false_block, brk, cont, switch)

        if has_else and true_exit is None and false_exit is None:
            return tok, None
        merge = self._new_block("if-merge")
        if not has_else:
            self._edge(cond, merge, EdgeKind.BRANCH_FALSE)
        if true_exit is not None:
            self._edge(true_exit, merge)
        if false_exit is not None:
            self._edge(false_exit, merge)
        return tok, merge

    # ----- loops ------------------------------------------------------------

    def _process_while(self, tok, limit_tok, current, brk, cont, switch):
        cond = self._new_block("loop-cond")
        if current is not None:
            self._edge(current, cond)
        cond_toks, tok = self._paren_contents(tok.next)
        cond.tokens.extend(cond_toks)

        body = self._new_block("loop-body")
        after = self._new_block("loop-after")
        self._edge(cond, body, EdgeKind.BRANCH_TRUE)
        self._edge(cond, after, EdgeKind.BRANCH_FALSE)
        tok, body_exit = self._process_body(tok, limit_tok, body, after, cond, switch)
        if body_exit is not None:
            self._edge(body_exit, cond, EdgeKind.BACK_EDGE)
        return tok, after

    def _process_for(self, tok, limit_tok, current, brk, cont, switch):
        header, tok = self._paren_contents(tok.next)
        parts: List[List] = [[]]
        depth = 0
        for t in header:
            if t.str in ("(", "[", "{"):
                depth += 1
            elif t.str in (")", "]", "}"):
                depth -= 1
            if t.str == ";" and depth == 0 and len(parts) < 3:
                parts.append([])
                continue
            parts[-1].append(t)
        while len(parts) < 3:
            parts.append([])
        init_toks, cond_toks, incr_toks = parts

        init = self._new_block("loop-init")
        init.tokens.extend(init_toks)
        if current is not None:
            self._edge(current, init)
        cond = self._new_block("loop-cond")
        cond.tokens.extend(cond_toks)
        self._edge(init, cond)

        body = self._new_block("loop-body")
        incr = self._new_block("loop-incr")
        incr.tokens.extend(incr_toks)
        after = self._new_block("loop-after")
        self._edge(cond, body, EdgeKind.BRANCH_TRUE)
        self._edge(cond, after, EdgeKind.BRANCH_FALSE)

        tok, body_exit = self._process_body(tok, limit_tok, body, after, incr, switch)
        if body_exit is not None:
            self._edge(body_exit, incr)
        self._edge(incr, cond, EdgeKind.BACK_EDGE)
        return tok, after

    def _process_do_while(self, tok, limit_tok, current, brk, cont, switch):
        body = self._new_block("loop-body")
        if current is not None:
            self._edge(current, body)
        cond = self._new_block("loop-cond")
        after = self._new_block("loop-after")

        tok, body_exit = self._process_body(tok.next, limit_tok, body, after, cond, switch)
        if body_exit is not None:
            self._edge(body_exit, cond)
        if tok is not None and tok is not limit_tok and tok.str == "while":
            cond_toks, tok = self._paren_contents(tok.next)
            cond.tokens.extend(cond_toks)
            if tok is not None and tok is not limit_tok and tok.str == ";":
                tok = tok.next
        self._edge(cond, body, EdgeKind.BACK_EDGE)
        self._edge(cond, after, EdgeKind.BRANCH_FALSE)
        return tok, after

    # ----- switch -----------------------------------------------------------

    def _process_switch(self, tok, limit_tok, current, brk, cont, switch):
        dispatch = self._new_block("switch-dispatch")
        if current is not None:
            self._edge(current, dispatch)
        cond_toks, tok = self._paren_contents(tok.next)
        dispatch.tokens.extend(cond_toks)

        after = self._new_block("switch-after")
        ctx = _SwitchContext(dispatch)
        tok, body_exit = self._process_body(tok, limit_tok, None, after, cont, ctx)
        if body_exit is not None:
            self._edge(body_exit, after)
        if not ctx.has_default:
            self._edge(dispatch, after, EdgeKind.SWITCH_DEFAULT)
        return tok, after


# ═══════════════════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════════════════

def find_function_scope(function, cfg_config):
    """Return the ``Function`` scope that holds the body of *function*."""
    for s in cfg_config.scopes:
        if s.type == "Function" and s.function is function:
            return s
    fid = getattr(function, "Id", None)
    for s in cfg_config.scopes:
        if s.type == "Function" and s.className == function.name:
            if fid is not None and getattr(s, "functionId", None) == fid:
                return s
    return None


def build_cfg(function, cfg_config) -> Optional[CFG]:
    """Build a :class:`CFG` for a single function.

    Returns ``None`` when the function has no body in *cfg_config*
    (a prototype, or a body excluded by the preprocessor configuration).
    """
    scope = find_function_scope(function, cfg_config)
    if scope is None or scope.bodyStart is None or scope.bodyEnd is None:
        return None
    return _CFGBuilder(function, scope).build()


def build_all_cfgs(cfg_config) -> "OrderedDict":
    """Map every function with a body to its CFG, in dump order."""
    result: OrderedDict = OrderedDict()
    for func in cfg_config.functions:
        cfg = build_cfg(func, cfg_config)
        if cfg is not None:
            result[func] = cfg
    return result
