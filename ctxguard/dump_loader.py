"""
ctxguard.dump_loader
====================

Front-end for Cppcheck dump files (``cppcheck --dump foo.c`` writes
``foo.c.dump``).  Every ``cppcheckdata.Configuration`` in a dump becomes one
:class:`~ctxguard.program.ProgramModel`:

* each ``cppcheckdata.Function`` becomes a :class:`~ctxguard.program.Function`
  whose blocks are the nodes of its :mod:`ctrlflow_graph <ctxguard.ctrlflow_graph>`
  CFG, entry node first;
* call sites are found in the tokens of each CFG node, in source order.

Call detection follows Cppcheck's own annotations:

1. a token with ``token.function`` set and followed by ``(`` is a call to
   that function;
2. otherwise a token that is ``astOperand1`` of a call ``(`` is the callee
   expression.  Cast parentheses never count, and neither do operator
   keywords such as ``sizeof``.  A plain name directly followed by the
   ``(`` that is not a variable is an external function, declared by
   name, and ``ns::f`` is declared under its qualified name.  A member or
   qualified callee whose name Cppcheck resolved is left to rule 1.  A
   variable (function pointer) or any other expression such as ``(*fp)``
   or ``obj.method`` is an unresolved call.

Cppcheck dumps carry source names, not linkage names, so the raw symbol of
every function is its plain name.
:class:`~ctxguard.symbols.CppcheckSignatureResolver` renders C++ display
names from the attached ``cppcheckdata.Function``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from ctxguard.ctrlflow_graph import CFG, build_cfg
from ctxguard.errors import ErrorCodes, ProgramLoadError
from ctxguard.program import BasicBlock, Function, ProgramModel

logger = logging.getLogger(__name__)

_C_SUFFIXES = (".c", ".h", ".i")

# Take a parenthesised operand in the AST but are not calls.
_OPERATOR_KEYWORDS = frozenset({
    "sizeof", "alignof", "_Alignof", "typeid", "decltype", "noexcept",
    "typeof", "__typeof__",
})


def is_cplusplus_source(path: Union[str, Path]) -> bool:
    """Guess the source language from a dump file name (``x.cpp.dump``)."""
    name = Path(path).name
    if name.endswith(".dump"):
        name = name[: -len(".dump")]
    return Path(name).suffix.lower() not in _C_SUFFIXES


def _import_cppcheckdata():
    """Import ``cppcheckdata`` (shipped with Cppcheck, not on PyPI)."""
    try:
        import cppcheckdata  # type: ignore[import-untyped]
    except ImportError as exc:
        raise ProgramLoadError(
            "cppcheckdata is not importable",
            code=ErrorCodes.CPPCHECKDATA_MISSING,
            hint="install cppcheck and add its addons/ directory to PYTHONPATH",
        ) from exc
    return cppcheckdata


class DumpProgramBuilder:
    """Builds a :class:`ProgramModel` from one ``cppcheckdata.Configuration``."""

    def __init__(self, cfg_config, name: str = "<dump>") -> None:
        self.cfg_config = cfg_config
        self.program = ProgramModel(name)
        # cppcheckdata.Function.Id -> handle
        self._by_id: Dict[str, Function] = {}

    def build(self) -> ProgramModel:
        functions = list(self.cfg_config.functions)
        for func in functions:
            self._handle_for(func)
        for func in functions:
            cfg = build_cfg(func, self.cfg_config)
            if cfg is not None:
                self._add_body(self._by_id[self._key(func)], cfg)
        return self.program

    @staticmethod
    def _key(func) -> str:
        fid = getattr(func, "Id", None)
        return str(fid) if fid is not None else str(id(func))

    def _handle_for(self, func) -> Function:
        key = self._key(func)
        fn = self._by_id.get(key)
        if fn is None:
            tok_def = getattr(func, "tokenDef", None)
            fn = Function(
                func.name,
                origin=func,
                file=getattr(tok_def, "file", None),
                line=getattr(tok_def, "linenr", None),
            )
            self.program.add_function(fn, key=f"{func.name}#{key}")
            self._by_id[key] = fn
        return fn

    def _add_body(self, fn: Function, cfg: CFG) -> None:
        blocks: Dict[int, BasicBlock] = {}
        for node in cfg.nodes:
            blocks[node.id] = fn.add_block(f"BB{node.id}:{node.kind}")
        for node in cfg.nodes:
            block = blocks[node.id]
            for tok in node.tokens:
                self._scan_call(block, tok)
            for edge in node.successors:
                block.add_successor(blocks[edge.dst.id])

    def _scan_call(self, block: BasicBlock, tok) -> None:
        nxt = tok.next
        func_ref = getattr(tok, "function", None)
        if func_ref is not None and nxt is not None and nxt.str == "(":
            block.add_call(self._handle_for(func_ref), text=tok.str,
                           file=tok.file, line=tok.linenr)
            return

        parent = getattr(tok, "astParent", None)
        if parent is None or parent.str != "(" or getattr(parent, "astOperand1", None) is not tok:
            return
        if getattr(parent, "isCast", False):
            return

        target: Optional[Function] = None
        text = tok.str
        if tok.isName:
            if nxt is None or nxt.str != "(":
                return
            if tok.str in _OPERATOR_KEYWORDS or getattr(tok, "isKeyword", False):
                return
            if getattr(tok, "variable", None) is None:
                target = self.program.declare(tok.str)
        elif tok.str in (".", "::"):
            member = getattr(tok, "astOperand2", None)
            if member is not None and getattr(member, "function", None) is not None:
                # counted when the member token itself is scanned
                return
            if tok.str == "::" and member is not None and member.isName:
                text = _qualified_name(tok)
                target = self.program.declare(text)
        if target is None:
            logger.debug("%s:%s: unresolved call through %r", tok.file, tok.linenr, tok.str)
        block.add_call(target, text=text, file=tok.file, line=tok.linenr)


def _qualified_name(tok) -> str:
    """Spell a ``::`` subtree as ``a::b::c``."""
    if tok is None:
        return ""
    if tok.str != "::":
        return tok.str
    left = _qualified_name(getattr(tok, "astOperand1", None))
    right = _qualified_name(getattr(tok, "astOperand2", None))
    return f"{left}::{right}" if left else right


def load_configuration(cfg_config, name: str = "<dump>") -> ProgramModel:
    """Build a program image from one dump configuration."""
    program = DumpProgramBuilder(cfg_config, name).build()
    stats = program.statistics()
    logger.info(
        "Loaded %s: %d functions (%d defined), %d blocks, %d call sites",
        name, stats["functions"], stats["defined_functions"],
        stats["blocks"], stats["call_sites"],
    )
    return program


def load_dump(path: Union[str, Path]) -> List[ProgramModel]:
    """Parse a ``.dump`` file; one program per preprocessor configuration."""
    p = Path(path)
    if not p.is_file():
        raise ProgramLoadError(
            "dump file not found",
            code=ErrorCodes.INPUT_UNREADABLE,
            file=str(p),
        )
    cppcheckdata = _import_cppcheckdata()
    try:
        data = cppcheckdata.parsedump(str(p))
    except Exception as exc:
        raise ProgramLoadError(
            f"failed to parse dump file: {exc}",
            code=ErrorCodes.INPUT_UNREADABLE,
            file=str(p),
        ) from exc

    configurations = list(getattr(data, "configurations", None) or [])
    if not configurations:
        raise ProgramLoadError(
            "dump file has no configurations",
            code=ErrorCodes.EMPTY_DUMP,
            file=str(p),
        )
    programs = []
    for cfg_config in configurations:
        cfg_name = getattr(cfg_config, "name", "")
        label = f"{p}[{cfg_name}]" if len(configurations) > 1 else str(p)
        programs.append(load_configuration(cfg_config, label))
    return programs
