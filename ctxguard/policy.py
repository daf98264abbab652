"""
ctxguard.policy
===============

The calling-context contract: which functions start a context (entry
points), where exploration stops harmlessly (sinks), and which functions
must never be reached from an entry point (blacklist).

All three sets hold *display names* (see :mod:`ctxguard.symbols`).  They
must be pairwise disjoint; a name in two sets has no defined meaning and
is rejected when the :class:`Policy` is built.

Sources
-------
* built-in presets (:data:`PRESETS`)
* JSON policy files::

      {
          "entry_points": ["x86_exception_handler"],
          "sinks": ["panic", "thread_preempt"],
          "blacklist": ["mutex_acquire"]
      }

  ``entry``/``entries``, ``sink`` and ``blacklisted`` are accepted as
  key aliases.
* command-line flags, merged on top.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Union

from ctxguard.errors import ErrorCodes, PolicyError

logger = logging.getLogger(__name__)


_KEY_ALIASES: Dict[str, str] = {
    "entry_points": "entry_points",
    "entry": "entry_points",
    "entries": "entry_points",
    "sinks": "sinks",
    "sink": "sinks",
    "blacklist": "blacklist",
    "blacklisted": "blacklist",
}


@dataclass(frozen=True)
class Policy:
    """Three disjoint sets of display names."""

    entry_points: FrozenSet[str] = field(default_factory=frozenset)
    sinks: FrozenSet[str] = field(default_factory=frozenset)
    blacklist: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        for attr in ("entry_points", "sinks", "blacklist"):
            value = getattr(self, attr)
            if isinstance(value, str):
                raise PolicyError(
                    f"{attr} must be a collection of names, not a string",
                    code=ErrorCodes.POLICY_FILE_MALFORMED,
                )
            object.__setattr__(self, attr, frozenset(value))
        self._check_disjoint()

    def _check_disjoint(self) -> None:
        pairs = (
            ("entry_points", "sinks"),
            ("entry_points", "blacklist"),
            ("sinks", "blacklist"),
        )
        for left, right in pairs:
            common = getattr(self, left) & getattr(self, right)
            if common:
                names = ", ".join(sorted(common))
                raise PolicyError(
                    f"{names} listed in both {left} and {right}",
                    code=ErrorCodes.POLICY_OVERLAP,
                    hint="each name may belong to at most one policy set",
                )

    # ----- queries ----------------------------------------------------------

    def is_sink(self, name: str) -> bool:
        return name in self.sinks

    def is_blacklisted(self, name: str) -> bool:
        return name in self.blacklist

    @property
    def is_empty(self) -> bool:
        return not (self.entry_points or self.sinks or self.blacklist)

    # ----- combination ------------------------------------------------------

    def merged(
        self,
        entry_points: Iterable[str] = (),
        sinks: Iterable[str] = (),
        blacklist: Iterable[str] = (),
    ) -> "Policy":
        """Return a new policy with the given names added (and re-validated)."""
        return Policy(
            entry_points=self.entry_points | frozenset(entry_points),
            sinks=self.sinks | frozenset(sinks),
            blacklist=self.blacklist | frozenset(blacklist),
        )

    def union(self, other: "Policy") -> "Policy":
        return self.merged(other.entry_points, other.sinks, other.blacklist)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_points": sorted(self.entry_points),
            "sinks": sorted(self.sinks),
            "blacklist": sorted(self.blacklist),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], source: str = "") -> "Policy":
        if not isinstance(data, Mapping):
            raise PolicyError(
                "policy must be a JSON object",
                code=ErrorCodes.POLICY_FILE_MALFORMED,
                file=source,
            )
        collected: Dict[str, set] = {
            "entry_points": set(), "sinks": set(), "blacklist": set(),
        }
        for key, value in data.items():
            canonical = _KEY_ALIASES.get(key)
            if canonical is None:
                raise PolicyError(
                    f"unknown policy key {key!r}",
                    code=ErrorCodes.POLICY_FILE_MALFORMED,
                    file=source,
                    hint="expected entry_points, sinks or blacklist",
                )
            if isinstance(value, str) or not isinstance(value, (list, tuple)):
                raise PolicyError(
                    f"policy key {key!r} must be a list of names",
                    code=ErrorCodes.POLICY_FILE_MALFORMED,
                    file=source,
                )
            for item in value:
                if not isinstance(item, str) or not item:
                    raise PolicyError(
                        f"policy key {key!r} contains a non-name entry: {item!r}",
                        code=ErrorCodes.POLICY_FILE_MALFORMED,
                        file=source,
                    )
            collected[canonical].update(value)
        return cls(**{k: frozenset(v) for k, v in collected.items()})


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------

#: Interrupt context: nothing reachable from the exception handler may
#: block on a mutex.  Preemption and panics end the context.
INTERRUPT_CONTEXT = Policy(
    entry_points=frozenset({"x86_exception_handler"}),
    sinks=frozenset({"thread_preempt", "panic", "_panic"}),
    blacklist=frozenset({
        "mutex_acquire",
        "mutex_acquire_timeout",
        "mutex_acquire_timeout_internal",
    }),
)

PRESETS: Dict[str, Policy] = {
    "interrupt-context": INTERRUPT_CONTEXT,
}


def get_preset(name: str) -> Policy:
    try:
        return PRESETS[name]
    except KeyError:
        raise PolicyError(
            f"unknown preset {name!r}",
            code=ErrorCodes.UNKNOWN_PRESET,
            hint=f"available presets: {', '.join(sorted(PRESETS))}",
        ) from None


def load_policy(path: Union[str, Path]) -> Policy:
    """Read a JSON policy file."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise PolicyError(
            f"cannot read policy file: {exc.strerror or exc}",
            code=ErrorCodes.POLICY_FILE_UNREADABLE,
            file=str(p),
        ) from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PolicyError(
            f"invalid JSON: {exc.msg}",
            code=ErrorCodes.POLICY_FILE_MALFORMED,
            file=str(p),
            line=exc.lineno,
        ) from exc
    policy = Policy.from_mapping(data, source=str(p))
    logger.debug("Loaded policy from %s: %s", p, policy.to_dict())
    return policy


def build_policy(
    preset: Optional[str] = None,
    policy_file: Optional[Union[str, Path]] = None,
    entry_points: Iterable[str] = (),
    sinks: Iterable[str] = (),
    blacklist: Iterable[str] = (),
) -> Policy:
    """Assemble a policy from a preset, a file and extra names, in that order.

    Validation runs once on the merged result, so a file may not
    contradict its preset nor a flag contradict the file.
    """
    entries = set(entry_points)
    sink_set = set(sinks)
    black = set(blacklist)
    if preset:
        base = get_preset(preset)
        entries |= base.entry_points
        sink_set |= base.sinks
        black |= base.blacklist
    if policy_file:
        loaded = load_policy(policy_file)
        entries |= loaded.entry_points
        sink_set |= loaded.sinks
        black |= loaded.blacklist
    return Policy(
        entry_points=frozenset(entries),
        sinks=frozenset(sink_set),
        blacklist=frozenset(black),
    )
