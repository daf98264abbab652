# tests/conftest.py
"""
Shared fixtures and builders.

* ``make_program`` builds a :class:`ProgramModel` of single-block functions
  from a ``{caller: [callee, ...]}`` table.
* ``MockToken`` / ``MockFunction`` / ``MockScope`` / ``MockConfiguration``
  imitate the parts of ``cppcheckdata`` the Cppcheck front-end reads, and
  ``make_configuration`` turns a small C snippet into such a configuration.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Sequence

import pytest

from ctxguard.policy import Policy
from ctxguard.program import ProgramModel
from ctxguard.reporter import ChainReporter, CollectingSink


# ---------------------------------------------------------------------------
# Program builders
# ---------------------------------------------------------------------------

def make_program(
    calls: Dict[str, Optional[Sequence[Optional[str]]]],
    name: str = "test",
) -> ProgramModel:
    """Single-block functions: ``name -> callees in order``.

    ``None`` as the value makes a declaration; ``None`` as a callee is an
    unresolved (indirect) call.
    """
    prog = ProgramModel(name)
    for fn_name, callees in calls.items():
        if callees is None:
            prog.declare(fn_name)
            continue
        block = prog.define(fn_name).add_block("entry")
        for callee in callees:
            block.add_call(prog.declare(callee) if callee is not None else None)
    return prog


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def reporter(sink):
    return ChainReporter(sink)


@pytest.fixture
def irq_policy():
    return Policy(
        entry_points=frozenset({"irq"}),
        sinks=frozenset({"panic"}),
        blacklist=frozenset({"mutex_acquire"}),
    )


# ---------------------------------------------------------------------------
# cppcheckdata mocks
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(r"[A-Za-z_]\w*|\d+|::|->|\+\+|--|&&|\|\||[<>=!]=|\S")

# Names a real dump never attaches a call AST to.
_NOT_CALLEES = frozenset({
    "if", "while", "for", "switch", "return", "do", "else",
    "case", "default", "goto", "break", "continue",
})


class MockToken:
    """Mimics ``cppcheckdata.Token``."""

    def __init__(self, s: str, file: str = "test.c", linenr: int = 1, Id: str = "0") -> None:
        self.str = s
        self.Id = Id
        self.file = file
        self.linenr = linenr
        self.next: Optional[MockToken] = None
        self.previous: Optional[MockToken] = None
        self.link: Optional[MockToken] = None
        self.isName = bool(re.match(r"[A-Za-z_]", s))
        self.isNumber = s.isdigit()
        self.function = None
        self.variable = None
        self.astParent = None
        self.astOperand1 = None
        self.astOperand2 = None
        self.scope = None

    def __repr__(self) -> str:
        return f"MockToken({self.str!r}@{self.linenr})"


class MockVariable:
    def __init__(self, name: str, type_tokens: Optional[List[MockToken]] = None) -> None:
        self.nameToken = None
        self.name = name
        self.typeStartToken = type_tokens[0] if type_tokens else None
        self.typeEndToken = type_tokens[-1] if type_tokens else None


class MockScope:
    def __init__(self, type: str, className: str = "", nestedIn=None) -> None:
        self.type = type
        self.className = className
        self.nestedIn = nestedIn
        self.bodyStart = None
        self.bodyEnd = None
        self.function = None
        self.functionId = None


class MockFunction:
    def __init__(self, name: str, Id: str, nestedIn=None, argument=None) -> None:
        self.name = name
        self.Id = Id
        self.nestedIn = nestedIn
        self.argument = argument or {}
        self.tokenDef = None


class MockConfiguration:
    def __init__(self, name: str = "") -> None:
        self.name = name
        self.tokenlist: List[MockToken] = []
        self.functions: List[MockFunction] = []
        self.scopes: List[MockScope] = []


def make_token_chain(code: str, file: str = "test.c") -> List[MockToken]:
    """Tokenize *code*; links ``next``/``previous`` and matching brackets."""
    tokens: List[MockToken] = []
    for lineno, line in enumerate(code.splitlines(), start=1):
        for text in _TOKEN_RE.findall(line):
            tokens.append(MockToken(text, file=file, linenr=lineno, Id=str(len(tokens) + 1)))
    for prev, cur in zip(tokens, tokens[1:]):
        prev.next = cur
        cur.previous = prev
    stack: List[MockToken] = []
    pairs = {")": "(", "]": "[", "}": "{"}
    for tok in tokens:
        if tok.str in ("(", "[", "{"):
            stack.append(tok)
        elif tok.str in pairs:
            opener = stack.pop()
            assert opener.str == pairs[tok.str], f"unbalanced {tok!r}"
            opener.link = tok
            tok.link = opener
    assert not stack, "unbalanced brackets"
    return tokens


def make_configuration(
    code: str,
    file: str = "test.c",
    pointers: Iterable[str] = (),
    name: str = "",
) -> MockConfiguration:
    """Build a configuration from top-level C function definitions.

    ``name(...) { ... }`` at depth 0 defines a function and ``name(...);``
    declares one.  Inside bodies, ``name(`` gets a call AST; it is linked
    to the function of that name when one exists, and to a variable when
    *name* is listed in *pointers*.
    """
    config = MockConfiguration(name)
    tokens = make_token_chain(code, file)
    config.tokenlist = tokens
    pointer_names = set(pointers)
    by_name: Dict[str, MockFunction] = {}

    tok = tokens[0] if tokens else None
    while tok is not None:
        paren = tok.next
        if tok.isName and tok.str not in _NOT_CALLEES and paren is not None and paren.str == "(":
            after = paren.link.next
            func = MockFunction(tok.str, Id=f"f{len(config.functions) + 1}")
            func.tokenDef = tok
            config.functions.append(func)
            by_name.setdefault(tok.str, func)
            if after is not None and after.str == "{":
                scope = MockScope("Function", className=tok.str)
                scope.bodyStart = after
                scope.bodyEnd = after.link
                scope.function = func
                scope.functionId = func.Id
                config.scopes.append(scope)
                tok = after.link.next
            else:
                tok = after.next if after is not None else None
            continue
        tok = tok.next

    for scope in config.scopes:
        t = scope.bodyStart.next
        while t is not scope.bodyEnd:
            nxt = t.next
            if t.isName and t.str not in _NOT_CALLEES and nxt.str == "(":
                t.astParent = nxt
                nxt.astOperand1 = t
                if t.str in pointer_names:
                    t.variable = MockVariable(t.str)
                else:
                    t.function = by_name.get(t.str)
            t = nxt
    return config


def function_named(config: MockConfiguration, name: str) -> MockFunction:
    for func in config.functions:
        if func.name == name:
            return func
    raise KeyError(name)
