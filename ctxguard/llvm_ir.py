"""
ctxguard.llvm_ir
================

Front-end for textual LLVM IR (``.ll`` files, e.g. from
``clang -S -emit-llvm``).  Produces a :class:`~ctxguard.program.ProgramModel`
with one function per ``define``/``declare``, the basic blocks of every
body, their successor edges and their call sites.

Only what the explorer needs is recognised; the rest of each instruction
is skipped.  Each *logical line* (comments removed, ``switch`` tables
folded onto one line) is classified by a Parsimonious PEG grammar:

==============  ==============================================================
definition      ``define ... @name(...) ... {``
declaration     ``declare ... @name(...)``
block label     ``name:``, starts a new basic block
body end        ``}``
call            ``[%x =] [tail|musttail|notail] call|invoke|callbr ...``
terminator      ``br``, ``switch``, ``indirectbr``, ``ret``, ``resume``, …
other           anything else
==============  ==============================================================

Successors of a block are the ``label %x`` operands of its terminator in
textual order, which is LLVM's successor numbering (true/false for ``br``,
default first for ``switch``, normal/unwind for ``invoke``).

A call is *resolved* only when its callee operand is a global ``@name``.
Calls through a local value, inline ``asm`` and constant-expression callees
such as ``bitcast (...)`` are kept as unresolved call sites.

Typical usage::

    from ctxguard.llvm_ir import load_ir_file

    program = load_ir_file("kernel.ll")
    print(program.statistics())
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from parsimonious.exceptions import ParseError, VisitationError
from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from ctxguard.errors import ErrorCodes, ProgramLoadError
from ctxguard.program import Function, ProgramModel

logger = logging.getLogger(__name__)

#: Name given to an entry block that has no label in the source.
ENTRY_BLOCK_NAME = "<entry>"


# ═══════════════════════════════════════════════════════════════════
#  PART 1: LINE GRAMMAR (Parsimonious PEG)
# ═══════════════════════════════════════════════════════════════════

LLVM_LINE_GRAMMAR = Grammar(r'''
    line            = definition / declaration / body_end / block_label / instruction

    definition      = "define" header global_name rest
    declaration     = "declare" header global_name rest
    header          = ~r"\s[^@]*"
    body_end        = "}" rest
    block_label     = symbol_name ":" ws

    instruction     = assignment? operation
    assignment      = local_name ws "=" ws
    operation       = call_like / terminator / other

    call_like       = call_keyword call_prefix callee? operand*
    call_keyword    = ~r"(?:(?:tail|musttail|notail)\s+)?(?:call|invoke|callbr)\b"
    call_prefix     = ~r"(?:[^@%\"]|\"[^\"]*\"|[@%](?:[-\w$.]+|\"[^\"]*\")(?![-\w$.])(?!\s*\()|%(?:[-\w$.]+|\"[^\"]*\")(?![-\w$.])(?=\s*\(.*@(?:[-\w$.]+|\"[^\"]*\")\s*\())*"
    callee          = (global_name / local_name) &~r"\s*\("

    terminator      = terminator_op operand*
    terminator_op   = ~r"(?:br|switch|indirectbr|ret|unreachable|resume|catchswitch|catchret|cleanupret)\b"

    operand         = label_ref / quoted / ~r"[^l\"]+" / "l"
    label_ref       = "label" ~r"\s+" local_name

    other           = ~r".*"

    global_name     = "@" symbol_name
    local_name      = "%" symbol_name
    symbol_name     = quoted / ~r"[-\w$.]+"
    quoted          = ~r"\"[^\"]*\""
    rest            = ~r".*"
    ws              = ~r"\s*"
''')


# ═══════════════════════════════════════════════════════════════════
#  PART 2: LINE RECORDS + VISITOR
# ═══════════════════════════════════════════════════════════════════

@dataclass
class IRLine:
    """Classification of one logical line."""

    kind: str                              # define/declare/label/end/call/terminator/other
    symbol: Optional[str] = None           # define/declare: function symbol
    label: Optional[str] = None            # label: block name
    callee: Optional[str] = None           # call: global callee symbol, if direct
    opcode: Optional[str] = None           # call/terminator: the keyword
    labels: List[str] = field(default_factory=list)   # successor labels

    @property
    def is_call(self) -> bool:
        return self.kind == "call"


def _unquote(name: str) -> str:
    if len(name) >= 2 and name[0] == '"' and name[-1] == '"':
        return name[1:-1]
    return name


class IRLineVisitor(NodeVisitor):
    """Turns a parse of :data:`LLVM_LINE_GRAMMAR` into an :class:`IRLine`."""

    grammar = LLVM_LINE_GRAMMAR

    def __init__(self) -> None:
        self._labels: List[str] = []
        self._callee: Optional[Tuple[bool, str]] = None

    def classify(self, text: str) -> IRLine:
        self._labels = []
        self._callee = None
        return self.parse(text)

    def generic_visit(self, node, visited_children):
        if visited_children:
            if len(visited_children) == 1:
                return visited_children[0]
            return visited_children
        return node.text.strip()

    def visit_line(self, node, visited_children):
        return visited_children[0]

    def visit_definition(self, node, visited_children):
        return IRLine(kind="define", symbol=visited_children[2])

    def visit_declaration(self, node, visited_children):
        return IRLine(kind="declare", symbol=visited_children[2])

    def visit_body_end(self, node, visited_children):
        return IRLine(kind="end")

    def visit_block_label(self, node, visited_children):
        return IRLine(kind="label", label=_unquote(node.children[0].text))

    def visit_instruction(self, node, visited_children):
        return visited_children[-1]

    def visit_operation(self, node, visited_children):
        return visited_children[0]

    def visit_call_like(self, node, visited_children):
        keyword = node.children[0].text.split()[-1]
        callee = None
        if self._callee is not None and self._callee[0]:
            callee = self._callee[1]
        return IRLine(
            kind="call", opcode=keyword, callee=callee, labels=list(self._labels),
        )

    def visit_callee(self, node, visited_children):
        choice = node.children[0].children[0]
        self._callee = (
            choice.expr_name == "global_name",
            _unquote(choice.text[1:]),
        )
        return self._callee

    def visit_terminator(self, node, visited_children):
        return IRLine(
            kind="terminator",
            opcode=node.children[0].text,
            labels=list(self._labels),
        )

    def visit_label_ref(self, node, visited_children):
        self._labels.append(_unquote(node.children[2].text[1:]))
        return node.text

    def visit_other(self, node, visited_children):
        return IRLine(kind="other")

    def visit_global_name(self, node, visited_children):
        return _unquote(node.text[1:])


# ═══════════════════════════════════════════════════════════════════
#  PART 3: LOGICAL LINES
# ═══════════════════════════════════════════════════════════════════

_COMMENT_RE = re.compile(r'("[^"]*")|;.*')
_STRING_RE = re.compile(r'"[^"]*"')
# LLVM before 5.0 printed unnamed blocks as a comment: "; <label>:12"
_OLD_LABEL_RE = re.compile(r"^\s*;\s*<label>:(\d+)")


def _strip_comment(line: str) -> str:
    """Drop a trailing ``; comment`` that is not inside a string."""
    old_label = _OLD_LABEL_RE.match(line)
    if old_label:
        return old_label.group(1) + ":"
    return _COMMENT_RE.sub(lambda m: m.group(1) or "", line).strip()


def logical_lines(text: str) -> Iterator[Tuple[int, str]]:
    """Yield ``(first_line_number, text)`` for each non-empty logical line.

    A line that opens more ``[`` than it closes (a ``switch`` jump table)
    is joined with the following lines until the brackets balance.
    """
    pending: List[str] = []
    start = 0
    depth = 0
    for lineno, raw in enumerate(text.splitlines(), start=1):
        stripped = _strip_comment(raw)
        if not stripped:
            continue
        if not pending:
            start = lineno
        pending.append(stripped)
        bare = _STRING_RE.sub("", stripped)
        depth += bare.count("[") - bare.count("]")
        if depth <= 0:
            yield start, " ".join(pending)
            pending = []
            depth = 0
    if pending:
        yield start, " ".join(pending)


# ═══════════════════════════════════════════════════════════════════
#  PART 4: MODULE LOADER
# ═══════════════════════════════════════════════════════════════════

class IRModuleLoader:
    """Builds a :class:`ProgramModel` from LLVM IR text."""

    def __init__(self, source: str = "<string>") -> None:
        self.source = source
        self.program = ProgramModel(source)
        self._visitor = IRLineVisitor()
        self._function: Optional[Function] = None
        self._block = None
        self._defined: set = set()

    def classify(self, text: str, lineno: int) -> IRLine:
        try:
            return self._visitor.classify(text)
        except (ParseError, VisitationError) as exc:
            raise ProgramLoadError(
                f"cannot parse line: {text[:80]}",
                code=ErrorCodes.IR_SYNTAX,
                file=self.source,
                line=lineno,
            ) from exc

    def load(self, text: str) -> ProgramModel:
        for lineno, line in logical_lines(text):
            if self._function is None:
                self._top_level(line, lineno)
            else:
                self._in_body(line, lineno)
        if self._function is not None:
            raise ProgramLoadError(
                f"body of @{self._function.symbol} is not terminated",
                code=ErrorCodes.IR_SYNTAX,
                file=self.source,
                line=self._function.line or 0,
                hint="expected a closing '}'",
            )
        stats = self.program.statistics()
        logger.info(
            "Loaded %s: %d functions (%d defined), %d blocks, %d call sites",
            self.source, stats["functions"], stats["defined_functions"],
            stats["blocks"], stats["call_sites"],
        )
        return self.program

    # ----- top level --------------------------------------------------------

    def _top_level(self, line: str, lineno: int) -> None:
        if not (line.startswith("define") or line.startswith("declare")):
            return
        rec = self.classify(line, lineno)
        if rec.kind == "declare":
            self.program.declare(rec.symbol, file=self.source, line=lineno)
            return
        if rec.kind != "define":
            raise ProgramLoadError(
                "malformed function header",
                code=ErrorCodes.IR_SYNTAX,
                file=self.source,
                line=lineno,
                hint="expected 'define <type> @name(...)'",
            )
        if rec.symbol in self._defined:
            raise ProgramLoadError(
                f"redefinition of @{rec.symbol}",
                code=ErrorCodes.IR_SYNTAX,
                file=self.source,
                line=lineno,
            )
        self._defined.add(rec.symbol)
        self._function = self.program.define(rec.symbol, file=self.source, line=lineno)
        self._block = None
        if not line.rstrip().endswith("{"):
            logger.debug("%s:%d: define without '{' on the same line", self.source, lineno)

    # ----- function body ----------------------------------------------------

    def _in_body(self, line: str, lineno: int) -> None:
        fn = self._function
        rec = self.classify(line, lineno)

        if rec.kind == "end":
            if not fn.blocks:
                fn.add_block(ENTRY_BLOCK_NAME)
            self._function = None
            self._block = None
            return

        if rec.kind == "label":
            self._block = fn.get_or_add_block(rec.label)
            return

        if self._block is None:
            self._block = fn.add_block(ENTRY_BLOCK_NAME)
        block = self._block

        if rec.is_call:
            target = self.program.declare(rec.callee) if rec.callee else None
            block.add_call(target, text=line, file=self.source, line=lineno)
            if target is None:
                logger.debug("%s:%d: unresolved call", self.source, lineno)

        for label in rec.labels:
            block.add_successor(fn.get_or_add_block(label))


def load_ir(text: str, source: str = "<string>") -> ProgramModel:
    """Parse LLVM IR *text* into a :class:`ProgramModel`."""
    return IRModuleLoader(source).load(text)


def load_ir_file(path: Union[str, Path]) -> ProgramModel:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise ProgramLoadError(
            f"cannot read IR file: {exc.strerror or exc}",
            code=ErrorCodes.INPUT_UNREADABLE,
            file=str(p),
        ) from exc
    return load_ir(text, source=str(p))
