"""
ctxguard.reporter
=================

Diagnostics sinks and the call-chain reporter.

A report is one line: a fixed preamble followed by every name of the call
chain, each preceded by a single space::

    Reached a black-listed function via the following call chain: \
x86_exception_handler handle_irq mutex_acquire
"""

from __future__ import annotations

import abc
import sys
from typing import List, Optional, Sequence, TextIO

CHAIN_PREAMBLE = "Reached a black-listed function via the following call chain:"


class DiagnosticsSink(abc.ABC):
    """Where report lines go."""

    @abc.abstractmethod
    def emit_line(self, text: str) -> None:
        ...


class StreamSink(DiagnosticsSink):
    """Write lines to a text stream (``sys.stderr`` when not given).

    The stream is looked up at emit time when defaulted, so redirection of
    ``sys.stderr`` after construction (pytest's ``capsys``) is honoured.
    """

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stderr

    def emit_line(self, text: str) -> None:
        self.stream.write(text + "\n")


class CollectingSink(DiagnosticsSink):
    """Keep lines in memory."""

    def __init__(self) -> None:
        self.lines: List[str] = []

    def emit_line(self, text: str) -> None:
        self.lines.append(text)


class TeeSink(DiagnosticsSink):
    """Forward each line to several sinks."""

    def __init__(self, *sinks: DiagnosticsSink) -> None:
        self.sinks = list(sinks)

    def emit_line(self, text: str) -> None:
        for sink in self.sinks:
            sink.emit_line(text)


def format_chain(chain: Sequence[str]) -> str:
    return CHAIN_PREAMBLE + "".join(" " + name for name in chain)


class ChainReporter:
    """Formats a call chain and hands it to a sink.

    Every reported chain is also remembered in :attr:`chains` (as a
    tuple snapshot) so callers can inspect results without parsing text.
    """

    def __init__(self, sink: Optional[DiagnosticsSink] = None) -> None:
        self.sink = sink if sink is not None else StreamSink()
        self.chains: List[tuple] = []

    def report(self, chain: Sequence[str]) -> None:
        snapshot = tuple(chain)
        self.chains.append(snapshot)
        self.sink.emit_line(format_chain(snapshot))
