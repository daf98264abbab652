"""
ctxguard.symbols
================

Symbol resolvers map a function's raw symbol to the *display name* that
policies are written against.  Policy matching is two-stage
(raw symbol → display name → set membership) so that a policy author can
black-list ``Mutex::Acquire(int)`` without knowing its mangled spelling.

Resolvers
---------
IdentityResolver
    The raw symbol is the display name (C code, or already-demangled input).
CxxFiltResolver
    Itanium C++ demangling through the ``c++filt`` binary.  Lookups are
    batched per program and cached; a missing tool degrades to identity.
CppcheckSignatureResolver
    Cppcheck dumps carry no linkage names, so the demangled form is rebuilt
    from the ``cppcheckdata.Function``: enclosing namespaces/classes, name
    and argument types, e.g. ``ns::Lock::acquire(int, char *)``.
"""

from __future__ import annotations

import abc
import logging
import shutil
import subprocess
from typing import Dict, Iterable, List, Optional

from ctxguard.program import Function, ProgramGraph

logger = logging.getLogger(__name__)


class SymbolResolver(abc.ABC):
    """Maps a function handle to its policy-matchable display name."""

    @abc.abstractmethod
    def display_name(self, function: Function) -> str:
        ...

    def prime(self, program: ProgramGraph) -> None:
        """Optional bulk warm-up before exploration starts."""


class IdentityResolver(SymbolResolver):

    def display_name(self, function: Function) -> str:
        return function.symbol


class CxxFiltResolver(SymbolResolver):
    """Demangle Itanium C++ symbols with ``c++filt``.

    Only names starting with ``_Z`` are sent to the tool; anything else is
    returned unchanged, as is any name the tool leaves alone.
    """

    def __init__(self, executable: str = "c++filt", timeout: float = 30.0) -> None:
        self.executable = executable
        self.timeout = timeout
        self._cache: Dict[str, str] = {}
        self._available: Optional[bool] = None

    @staticmethod
    def is_mangled(symbol: str) -> bool:
        return symbol.startswith("_Z")

    @property
    def available(self) -> bool:
        if self._available is None:
            self._available = shutil.which(self.executable) is not None
            if not self._available:
                logger.warning(
                    "%s not found on PATH; C++ symbols will not be demangled",
                    self.executable,
                )
        return self._available

    def prime(self, program: ProgramGraph) -> None:
        self.demangle_all(fn.symbol for fn in program.functions())

    def demangle_all(self, symbols: Iterable[str]) -> Dict[str, str]:
        """Demangle many symbols with a single ``c++filt`` invocation."""
        pending: List[str] = []
        for sym in symbols:
            if sym in self._cache:
                continue
            if not self.is_mangled(sym):
                self._cache[sym] = sym
                continue
            pending.append(sym)
        if pending:
            for raw, pretty in zip(pending, self._run(pending)):
                self._cache[raw] = pretty or raw
        return dict(self._cache)

    def _run(self, symbols: List[str]) -> List[str]:
        if not self.available:
            return list(symbols)
        try:
            proc = subprocess.run(
                [self.executable],
                input="\n".join(symbols) + "\n",
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("%s failed (%s); keeping raw symbols", self.executable, exc)
            self._available = False
            return list(symbols)
        lines = proc.stdout.splitlines()
        if len(lines) != len(symbols):
            logger.warning(
                "%s returned %d lines for %d symbols; keeping raw symbols",
                self.executable, len(lines), len(symbols),
            )
            return list(symbols)
        return [ln.strip() for ln in lines]

    def display_name(self, function: Function) -> str:
        sym = function.symbol
        cached = self._cache.get(sym)
        if cached is None:
            cached = self.demangle_all([sym])[sym]
        return cached


# ---------------------------------------------------------------------------
# Cppcheck
# ---------------------------------------------------------------------------

def _type_from_start_end(variable) -> str:
    """Reconstruct a type string from ``typeStartToken`` … ``typeEndToken``."""
    start = getattr(variable, "typeStartToken", None)
    end = getattr(variable, "typeEndToken", None)
    if start is None:
        return ""
    parts = []
    tok = start
    while tok:
        parts.append(tok.str)
        if tok is end:
            break
        tok = tok.next
    return " ".join(parts)


def _qualifiers(function) -> List[str]:
    """Enclosing namespace/class names, outermost first."""
    names: List[str] = []
    scope = getattr(function, "nestedIn", None)
    while scope is not None:
        if getattr(scope, "type", None) in ("Namespace", "Class", "Struct", "Union"):
            cls_name = getattr(scope, "className", None)
            if cls_name:
                names.append(cls_name)
        scope = getattr(scope, "nestedIn", None)
    names.reverse()
    return names


class CppcheckSignatureResolver(SymbolResolver):
    """Render C++ display names from Cppcheck function metadata.

    Parameters
    ----------
    cplusplus : bool
        When ``False`` (C sources) the plain function name is used, which
        matches what a demangler returns for an unmangled C symbol.
    """

    def __init__(self, cplusplus: bool = True) -> None:
        self.cplusplus = cplusplus
        self._cache: Dict[int, str] = {}

    def display_name(self, function: Function) -> str:
        origin = function.origin
        if origin is None or not self.cplusplus:
            return function.symbol
        key = id(function)
        name = self._cache.get(key)
        if name is None:
            name = self.signature(origin, function.symbol)
            self._cache[key] = name
        return name

    @staticmethod
    def signature(cpp_function, fallback: str = "") -> str:
        name = getattr(cpp_function, "name", None) or fallback
        qualified = "::".join(_qualifiers(cpp_function) + [name])
        args = getattr(cpp_function, "argument", None) or {}
        arg_types = []
        for idx in sorted(args.keys()):
            var = args[idx]
            arg_types.append(_type_from_start_end(var) if var is not None else "")
        return f"{qualified}({', '.join(arg_types)})"
