# ctxguard/errors.py
"""
ctxguard error types.

The exploration core never raises: every unusual condition it meets
(missing entry point, unresolved call, body-less function, black-listed
callee) is a policy outcome.  Errors only exist at the edges of the tool,
where a policy is assembled or a program image is loaded.

Error Hierarchy:
────────────────
    CtxGuardError (base)
    ├── PolicyError        - overlapping name sets, bad policy file, unknown preset
    └── ProgramLoadError   - unreadable input, malformed LLVM IR, empty dump

Error Codes:
────────────
Each error carries a code of the form CTXG-NNNN:
  - 1000-1999: Policy errors
  - 2000-2999: Program loading errors
  - 3000-3999: Output errors
  - 9000-9999: Internal errors
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


# ═══════════════════════════════════════════════════════════════════════════════
# ERROR CODES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ErrorCode:
    """A structured error code (``CTXG-NNNN``)."""

    number: int
    summary: str
    prefix: str = "CTXG"

    @property
    def code(self) -> str:
        return f"{self.prefix}-{self.number:04d}"

    def __str__(self) -> str:
        return self.code


class ErrorCodes:
    """Predefined error codes."""

    # Policy errors (1000-1999)
    POLICY_OVERLAP = ErrorCode(1001, "name belongs to more than one policy set")
    POLICY_FILE_UNREADABLE = ErrorCode(1002, "policy file cannot be read")
    POLICY_FILE_MALFORMED = ErrorCode(1003, "policy file is not a valid policy")
    UNKNOWN_PRESET = ErrorCode(1004, "unknown policy preset")

    # Program loading errors (2000-2999)
    INPUT_UNREADABLE = ErrorCode(2001, "input file cannot be read")
    IR_SYNTAX = ErrorCode(2002, "malformed LLVM IR")
    UNKNOWN_INPUT_KIND = ErrorCode(2003, "unrecognised input file type")
    EMPTY_DUMP = ErrorCode(2004, "dump file has no configurations")
    CPPCHECKDATA_MISSING = ErrorCode(2005, "cppcheckdata module not importable")

    # Output errors (3000-3999)
    OUTPUT_UNWRITABLE = ErrorCode(3001, "report file cannot be written")

    INTERNAL_ERROR = ErrorCode(9999, "internal error")


# ═══════════════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════════════

class CtxGuardError(Exception):
    """
    Base exception for all ctxguard errors.

    Carries a structured code, an optional source location and an optional
    hint, and renders itself GCC-style.
    """

    default_code: ErrorCode = ErrorCodes.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        file: str = "",
        line: int = 0,
        hint: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.file = file
        self.line = line
        self.hint = hint

    def to_gcc_format(self) -> str:
        """Format as ``file:line: error: message [CODE]``."""
        loc = ""
        if self.file:
            loc = f"{self.file}:{self.line}: " if self.line else f"{self.file}: "
        text = f"{loc}error: {self.message} [{self.code}]"
        if self.hint:
            text += f"\n  hint: {self.hint}"
        return text

    def __str__(self) -> str:
        return self.to_gcc_format()


class PolicyError(CtxGuardError):
    """The entry/sink/blacklist configuration is unusable."""

    default_code = ErrorCodes.POLICY_OVERLAP


class ProgramLoadError(CtxGuardError):
    """A program image could not be turned into a call graph."""

    default_code = ErrorCodes.INPUT_UNREADABLE
