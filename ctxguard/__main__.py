"""ctxguard/__main__.py — command-line entry point.

Usage examples
--------------
    # Interrupt-context check of an LLVM IR module (built-in preset)
    ctxguard kernel.ll

    # Cppcheck dump, custom policy, extra black-listed function
    ctxguard --policy irq.json --blacklist spin_wait drivers.c.dump

    # Machine-readable summary on stdout, chains into a file
    ctxguard --json -o chains.txt kernel.ll

Each input is loaded on its own: ``.ll`` files are read as textual LLVM
IR, ``.dump`` files as Cppcheck dumps (one program per preprocessor
configuration).  When no policy source is given the ``interrupt-context``
preset is used.

Exit codes
----------
    0   No black-listed function is reachable from any entry point.
    1   At least one black-listed call chain was reported.
    2   Configuration or input failure (bad policy, unreadable input, ...).
"""

from __future__ import annotations

import argparse
import contextlib
import json
import logging
import sys
import textwrap
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ctxguard import __version__
from ctxguard.checker import MODES, CheckReport, check
from ctxguard.errors import CtxGuardError, ErrorCodes, ProgramLoadError
from ctxguard.policy import PRESETS, Policy, build_policy
from ctxguard.program import ProgramGraph
from ctxguard.reporter import StreamSink
from ctxguard.symbols import (
    CppcheckSignatureResolver,
    CxxFiltResolver,
    IdentityResolver,
    SymbolResolver,
)

_log = logging.getLogger("ctxguard")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_VIOLATION: int = 1
EXIT_INFRA: int = 2

DEFAULT_PRESET = "interrupt-context"
DEMANGLE_CHOICES = ("auto", "cxxfilt", "none")

_handler: Optional[logging.Handler] = None


def _configure_logging(verbosity: int) -> None:
    """Set up the ``ctxguard`` logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    """
    global _handler
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    root = logging.getLogger("ctxguard")
    if _handler is not None:
        root.removeHandler(_handler)
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root.setLevel(level)
    root.addHandler(_handler)


# ===========================================================================
# Argument parser
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ctxguard",
        description=(
            "Report black-listed functions reachable from the entry points\n"
            "of a restricted calling context, with the call chain that\n"
            "reaches them."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              ctxguard kernel.ll
              ctxguard --preset interrupt-context --sink halt kernel.ll
              ctxguard --policy irq.json drivers.c.dump
        """),
    )
    parser.add_argument(
        "inputs",
        nargs="+",
        metavar="INPUT",
        help="LLVM IR (.ll) or Cppcheck dump (.dump) files.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )

    g = parser.add_argument_group("policy")
    g.add_argument(
        "--preset",
        choices=sorted(PRESETS),
        default=None,
        help=f"Built-in policy (default when nothing else is given: {DEFAULT_PRESET}).",
    )
    g.add_argument(
        "--policy",
        default=None,
        metavar="FILE",
        help="JSON policy file with entry_points, sinks and blacklist lists.",
    )
    g.add_argument(
        "--entry",
        action="append",
        default=[],
        metavar="NAME",
        help="Add an entry point (repeatable).",
    )
    g.add_argument(
        "--sink",
        action="append",
        default=[],
        metavar="NAME",
        help="Add a sink function (repeatable).",
    )
    g.add_argument(
        "--blacklist",
        action="append",
        default=[],
        metavar="NAME",
        help="Add a black-listed function (repeatable).",
    )

    g = parser.add_argument_group("exploration")
    g.add_argument(
        "--mode",
        choices=MODES,
        default="isolated",
        help="Fresh explorer per entry point, or one shared explorer (default: isolated).",
    )
    g.add_argument(
        "--demangle",
        choices=DEMANGLE_CHOICES,
        default="auto",
        help=(
            "Display names: auto (c++filt for .ll, Cppcheck signatures for "
            ".dump), cxxfilt, or none (raw symbols)."
        ),
    )

    g = parser.add_argument_group("output")
    g.add_argument(
        "-o", "--output",
        default=None,
        metavar="FILE",
        help="Write call-chain reports to FILE instead of stderr.",
    )
    g.add_argument(
        "--json",
        action="store_true",
        help="Print a JSON summary of all verdicts on stdout.",
    )
    return parser


# ===========================================================================
# Helpers
# ===========================================================================

def _resolve_policy(args: argparse.Namespace) -> Policy:
    preset = args.preset
    if not (preset or args.policy or args.entry or args.sink or args.blacklist):
        _log.info("No policy given; using the %s preset", DEFAULT_PRESET)
        preset = DEFAULT_PRESET
    policy = build_policy(
        preset=preset,
        policy_file=args.policy,
        entry_points=args.entry,
        sinks=args.sink,
        blacklist=args.blacklist,
    )
    if not policy.entry_points:
        _log.warning("Policy has no entry points; nothing will be checked")
    return policy


def _input_kind(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix == ".ll":
        return "llvm-ir"
    if suffix == ".dump":
        return "cppcheck"
    raise ProgramLoadError(
        "cannot tell the input format from the file name",
        code=ErrorCodes.UNKNOWN_INPUT_KIND,
        file=str(path),
        hint="expected a .ll (LLVM IR) or .dump (Cppcheck) file",
    )


def _load_inputs(
    path: Path,
    demangle: str,
    cxxfilt: CxxFiltResolver,
) -> List[Tuple[ProgramGraph, SymbolResolver]]:
    """Load one input file into ``(program, resolver)`` pairs."""
    kind = _input_kind(path)
    if kind == "llvm-ir":
        from ctxguard.llvm_ir import load_ir_file

        programs = [load_ir_file(path)]
        cplusplus = True
    else:
        from ctxguard.dump_loader import is_cplusplus_source, load_dump

        programs = load_dump(path)
        cplusplus = is_cplusplus_source(path)

    if demangle == "none":
        resolver: SymbolResolver = IdentityResolver()
    elif demangle == "cxxfilt" or kind == "llvm-ir":
        resolver = cxxfilt
    else:
        resolver = CppcheckSignatureResolver(cplusplus=cplusplus)
    return [(program, resolver) for program in programs]


def _summary(policy: Policy, reports: Sequence[CheckReport]) -> Dict[str, Any]:
    return {
        "version": __version__,
        "policy": policy.to_dict(),
        "passed": all(r.passed for r in reports),
        "programs": [r.to_dict() for r in reports],
    }


def _run(args: argparse.Namespace) -> int:
    policy = _resolve_policy(args)
    cxxfilt = CxxFiltResolver()

    loaded: List[Tuple[ProgramGraph, SymbolResolver]] = []
    for name in args.inputs:
        loaded.extend(_load_inputs(Path(name), args.demangle, cxxfilt))

    reports: List[CheckReport] = []
    with contextlib.ExitStack() as stack:
        if args.output:
            try:
                fh = stack.enter_context(open(args.output, "w", encoding="utf-8"))
            except OSError as exc:
                raise CtxGuardError(
                    f"cannot open output file: {exc.strerror or exc}",
                    code=ErrorCodes.OUTPUT_UNWRITABLE,
                    file=args.output,
                ) from exc
            sink = StreamSink(fh)
        else:
            sink = StreamSink()
        for program, resolver in loaded:
            report = check(program, policy, resolver=resolver, sink=sink, mode=args.mode)
            _log.info(
                "%s: %s (%d violation(s))",
                report.program, "passed" if report.passed else "FAILED",
                report.violation_count,
            )
            reports.append(report)

    if args.json:
        json.dump(_summary(policy, reports), sys.stdout, indent=2)
        sys.stdout.write("\n")
    return EXIT_OK if all(r.passed for r in reports) else EXIT_VIOLATION


# ===========================================================================
# Entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the checker.

    Parameters
    ----------
    argv:
        Command-line arguments.  ``None`` → ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (see module docstring for semantics).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        return _run(args)
    except CtxGuardError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130
    except Exception as exc:
        _log.error("Unhandled exception: %s", exc, exc_info=True)
        return EXIT_INFRA


if __name__ == "__main__":
    raise SystemExit(main())
