"""
ctxguard.checker
================

Runs the explorer once per configured entry point and collects verdicts.

Two modes are supported:

``isolated`` (default)
    Every entry point gets a fresh :class:`CallGraphExplorer`.  Results do
    not depend on the order in which entry points are checked.
``shared``
    One explorer is reused for all entry points, in sorted order.  Functions
    explored from an earlier entry point are treated as already checked for
    later ones, so a violation reachable from two entry points is reported
    only for the first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ctxguard.explorer import CallGraphExplorer
from ctxguard.policy import Policy
from ctxguard.program import ProgramGraph
from ctxguard.reporter import ChainReporter, DiagnosticsSink
from ctxguard.symbols import IdentityResolver, SymbolResolver

logger = logging.getLogger(__name__)

MODES = ("isolated", "shared")


@dataclass
class EntryVerdict:
    entry: str
    found: bool
    passed: bool
    chains: List[Tuple[str, ...]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": self.entry,
            "found": self.found,
            "passed": self.passed,
            "chains": [list(c) for c in self.chains],
        }


@dataclass
class CheckReport:
    program: str
    mode: str
    verdicts: List[EntryVerdict] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(v.passed for v in self.verdicts)

    @property
    def violation_count(self) -> int:
        return sum(len(v.chains) for v in self.verdicts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "program": self.program,
            "mode": self.mode,
            "passed": self.passed,
            "violations": self.violation_count,
            "entries": [v.to_dict() for v in self.verdicts],
        }


def check(
    program: ProgramGraph,
    policy: Policy,
    resolver: Optional[SymbolResolver] = None,
    sink: Optional[DiagnosticsSink] = None,
    mode: str = "isolated",
    name: str = "",
) -> CheckReport:
    """Check every entry point of *policy* against *program*."""
    if mode not in MODES:
        raise ValueError(f"mode must be one of {MODES}, not {mode!r}")
    resolver = resolver if resolver is not None else IdentityResolver()
    resolver.prime(program)
    reporter = ChainReporter(sink)
    report = CheckReport(program=name or getattr(program, "name", ""), mode=mode)

    shared: Optional[CallGraphExplorer] = None
    for entry in sorted(policy.entry_points):
        if mode == "shared":
            if shared is None:
                shared = CallGraphExplorer(program, policy, resolver, reporter)
            explorer = shared
        else:
            explorer = CallGraphExplorer(program, policy, resolver, reporter)

        already = len(reporter.chains)
        found = explorer.resolve_entry(entry) is not None
        passed = explorer.explore(entry)
        verdict = EntryVerdict(
            entry=entry,
            found=found,
            passed=passed,
            chains=list(reporter.chains[already:]),
        )
        if not passed:
            logger.info("%s: %d black-listed call chain(s)", entry, len(verdict.chains))
        report.verdicts.append(verdict)
    return report
