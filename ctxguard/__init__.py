"""
ctxguard — Calling-Context Reachability Checker
===============================================

Starting from the entry points of a restricted calling context (an
interrupt handler, say), ``ctxguard`` explores every function reachable
through direct calls and reports each *black-listed* function that can be
reached (a blocking mutex acquire, for instance), together with the call
chain that reaches it.  Exploration stops at *sink* functions, which end
the restricted context.

Core modules
------------
program
    The program-graph interface and its in-memory model.
explorer
    Depth-first exploration with first-visit-wins memoization.
policy
    Entry point / sink / blacklist sets, presets and JSON policy files.
reporter
    Call-chain reports and diagnostics sinks.
symbols
    Raw symbol to display name resolution (``c++filt``, Cppcheck signatures).
checker
    Runs the explorer for every entry point and collects verdicts.

Front-ends
----------
llvm_ir
    Textual LLVM IR (``.ll``), parsed with a Parsimonious grammar.
dump_loader / ctrlflow_graph
    Cppcheck dump files (``.dump``) and their control flow graphs.

Quick start
-----------
>>> from ctxguard import CollectingSink, Policy, ProgramModel, check
>>> prog = ProgramModel("demo")
>>> prog.define("irq").add_block("entry").add_call(prog.declare("mutex_acquire"))
CallSite(mutex_acquire)
>>> policy = Policy(entry_points={"irq"}, blacklist={"mutex_acquire"})
>>> check(prog, policy, sink=CollectingSink()).passed
False
"""

from __future__ import annotations

__version__ = "0.1.0"

from ctxguard.checker import MODES, CheckReport, EntryVerdict, check
from ctxguard.errors import CtxGuardError, ErrorCodes, PolicyError, ProgramLoadError
from ctxguard.explorer import CallGraphExplorer
from ctxguard.policy import INTERRUPT_CONTEXT, PRESETS, Policy, build_policy, load_policy
from ctxguard.program import BasicBlock, CallSite, Function, ProgramGraph, ProgramModel
from ctxguard.reporter import (
    CHAIN_PREAMBLE,
    ChainReporter,
    CollectingSink,
    DiagnosticsSink,
    StreamSink,
    format_chain,
)
from ctxguard.symbols import (
    CppcheckSignatureResolver,
    CxxFiltResolver,
    IdentityResolver,
    SymbolResolver,
)

__all__ = [
    "__version__",
    # core
    "ProgramGraph", "ProgramModel", "Function", "BasicBlock", "CallSite",
    "CallGraphExplorer",
    "Policy", "INTERRUPT_CONTEXT", "PRESETS", "build_policy", "load_policy",
    "ChainReporter", "DiagnosticsSink", "StreamSink", "CollectingSink",
    "CHAIN_PREAMBLE", "format_chain",
    "SymbolResolver", "IdentityResolver", "CxxFiltResolver",
    "CppcheckSignatureResolver",
    "check", "CheckReport", "EntryVerdict", "MODES",
    # errors
    "CtxGuardError", "PolicyError", "ProgramLoadError", "ErrorCodes",
]
