# tests/test_explorer.py
"""
Tests for the depth-first call-graph explorer.
"""

import logging
import sys

import pytest

from ctxguard.explorer import CallGraphExplorer
from ctxguard.policy import Policy
from ctxguard.program import ProgramModel
from ctxguard.reporter import CHAIN_PREAMBLE, ChainReporter, CollectingSink
from ctxguard.symbols import SymbolResolver
from tests.conftest import make_program


class DictResolver(SymbolResolver):
    """Display names from a lookup table, raw symbol otherwise."""

    def __init__(self, names):
        self.names = names

    def display_name(self, function):
        return self.names.get(function.symbol, function.symbol)


def explorer_for(prog, policy, sink, resolver=None):
    return CallGraphExplorer(prog, policy, resolver, ChainReporter(sink))


class TestBlacklistDetection:

    def test_chain_shape(self, sink, irq_policy):
        prog = make_program({
            "irq": ["a"],
            "a": ["b"],
            "b": ["mutex_acquire"],
        })
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is False
        assert ex.reporter.chains == [("irq", "a", "b", "mutex_acquire")]
        assert sink.lines == [CHAIN_PREAMBLE + " irq a b mutex_acquire"]

    def test_no_violation_passes_silently(self, sink, irq_policy):
        prog = make_program({"irq": ["a", "b"], "a": [], "b": ["a"]})
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is True
        assert sink.lines == []

    def test_direct_call_from_entry(self, sink, irq_policy):
        prog = make_program({"irq": ["mutex_acquire"]})
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is False
        assert ex.reporter.chains == [("irq", "mutex_acquire")]

    def test_blacklisted_function_with_body_is_not_entered(self, sink, irq_policy):
        prog = make_program({"irq": ["mutex_acquire"], "mutex_acquire": ["spin"]})
        ex = explorer_for(prog, irq_policy, sink)
        ex.explore("irq")
        assert prog.lookup_function("spin") not in ex.visited_functions

    def test_blacklisted_reached_along_two_paths_reported_twice(self, sink, irq_policy):
        prog = make_program({
            "irq": ["a", "b"],
            "a": ["mutex_acquire"],
            "b": ["mutex_acquire"],
        })
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is False
        assert ex.reporter.chains == [
            ("irq", "a", "mutex_acquire"),
            ("irq", "b", "mutex_acquire"),
        ]
        assert prog.lookup_function("mutex_acquire") not in ex.visited_functions

    def test_exploration_continues_after_failure(self, sink, irq_policy):
        prog = make_program({"irq": ["mutex_acquire", "a"], "a": ["b"], "b": []})
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is False
        assert prog.lookup_function("b") in ex.visited_functions

    def test_call_chain_empty_after_run(self, sink, irq_policy):
        prog = make_program({"irq": ["a"], "a": ["mutex_acquire"]})
        ex = explorer_for(prog, irq_policy, sink)
        ex.explore("irq")
        assert ex.call_chain == []


class TestSinks:

    def test_sink_prunes_exploration(self, sink, irq_policy):
        prog = make_program({"irq": ["panic"], "panic": ["mutex_acquire"]})
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is True
        assert sink.lines == []

    def test_sink_is_never_marked_visited(self, sink, irq_policy):
        prog = make_program({"irq": ["panic", "a"], "a": ["panic"], "panic": []})
        ex = explorer_for(prog, irq_policy, sink)
        ex.explore("irq")
        assert prog.lookup_function("panic") not in ex.visited_functions
        assert prog.lookup_function("a") in ex.visited_functions

    def test_sink_does_not_appear_in_chain(self, sink):
        policy = Policy(
            entry_points={"irq"},
            sinks={"thread_preempt"},
            blacklist={"mutex_acquire"},
        )
        prog = make_program({
            "irq": ["thread_preempt", "a"],
            "thread_preempt": ["mutex_acquire"],
            "a": ["mutex_acquire"],
        })
        ex = explorer_for(prog, policy, sink)
        assert ex.explore("irq") is False
        assert ex.reporter.chains == [("irq", "a", "mutex_acquire")]


class TestMemoization:

    def test_shared_callee_reported_once(self, sink, irq_policy):
        prog = make_program({
            "irq": ["a", "b"],
            "a": ["c"],
            "b": ["c"],
            "c": ["mutex_acquire"],
        })
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is False
        assert ex.reporter.chains == [("irq", "a", "c", "mutex_acquire")]

    def test_first_visit_wins_on_cycle(self, sink, irq_policy):
        # g is first explored while f is still open; its call back into f
        # succeeds immediately, so g is trusted from then on.
        prog = make_program({
            "irq": ["f", "g"],
            "f": ["g", "mutex_acquire"],
            "g": ["f"],
        })
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is False
        assert ex.reporter.chains == [("irq", "f", "mutex_acquire")]

    def test_reexplore_same_instance_is_vacuous(self, sink, irq_policy):
        prog = make_program({"irq": ["mutex_acquire"]})
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is False
        assert ex.explore("irq") is True
        assert len(sink.lines) == 1

    def test_reset_forgets_visited_state(self, sink, irq_policy):
        prog = make_program({"irq": ["mutex_acquire"]})
        ex = explorer_for(prog, irq_policy, sink)
        ex.explore("irq")
        ex.reset()
        assert ex.visited_functions == set()
        assert ex.explore("irq") is False
        assert len(sink.lines) == 2

    def test_fresh_explorers_are_idempotent(self, irq_policy):
        prog = make_program({
            "irq": ["a", "b"],
            "a": ["c", "mutex_acquire"],
            "b": ["c"],
            "c": ["mutex_acquire"],
        })
        first, second = CollectingSink(), CollectingSink()
        r1 = explorer_for(prog, irq_policy, first).explore("irq")
        r2 = explorer_for(prog, irq_policy, second).explore("irq")
        assert r1 == r2 is False
        assert first.lines == second.lines


class TestTermination:

    def test_self_recursion(self, sink, irq_policy):
        prog = make_program({"irq": ["irq"]})
        assert explorer_for(prog, irq_policy, sink).explore("irq") is True

    def test_mutual_recursion(self, sink, irq_policy):
        prog = make_program({"irq": ["a"], "a": ["b"], "b": ["a"]})
        assert explorer_for(prog, irq_policy, sink).explore("irq") is True

    def test_violation_behind_cycle(self, sink, irq_policy):
        prog = make_program({"irq": ["a"], "a": ["b", "mutex_acquire"], "b": ["a"]})
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is False
        assert ex.reporter.chains == [("irq", "a", "mutex_acquire")]

    def test_block_loop(self, sink, irq_policy):
        prog = ProgramModel()
        irq = prog.define("irq")
        head = irq.add_block("head")
        body = irq.add_block("body")
        head.add_successor(body)
        body.add_successor(head)
        body.add_call(prog.declare("mutex_acquire"))
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is False
        assert ex.visited_blocks == {head, body}

    def test_deep_chain_beyond_recursion_limit(self, sink, irq_policy):
        depth = sys.getrecursionlimit() * 3
        calls = {f"f{i}": [f"f{i + 1}"] for i in range(depth)}
        calls[f"f{depth}"] = ["mutex_acquire"]
        prog = make_program(calls)
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("f0") is False
        (chain,) = ex.reporter.chains
        assert len(chain) == depth + 2
        assert chain[0] == "f0" and chain[-1] == "mutex_acquire"


class TestBlockOrder:

    def _diamond(self):
        prog = ProgramModel()
        fn = prog.define("irq")
        entry = fn.add_block("entry")
        left = fn.add_block("left")
        right = fn.add_block("right")
        merge = fn.add_block("merge")
        entry.add_successor(left)
        entry.add_successor(right)
        left.add_successor(merge)
        right.add_successor(merge)
        return prog, fn, (entry, left, right, merge)

    def test_successors_in_order(self, sink):
        prog, _, (entry, left, right, merge) = self._diamond()
        left.add_call(prog.declare("lock_a"))
        right.add_call(prog.declare("lock_b"))
        policy = Policy(entry_points={"irq"}, blacklist={"lock_a", "lock_b"})
        ex = explorer_for(prog, policy, sink)
        assert ex.explore("irq") is False
        assert ex.reporter.chains == [("irq", "lock_a"), ("irq", "lock_b")]

    def test_merge_block_examined_once(self, sink, irq_policy):
        prog, _, (entry, left, right, merge) = self._diamond()
        merge.add_call(prog.declare("mutex_acquire"))
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is False
        assert len(ex.reporter.chains) == 1

    def test_calls_before_successors(self, sink):
        prog, _, (entry, left, right, merge) = self._diamond()
        left.add_call(prog.declare("lock_a"))
        entry.add_call(prog.declare("lock_b"))
        policy = Policy(entry_points={"irq"}, blacklist={"lock_a", "lock_b"})
        ex = explorer_for(prog, policy, sink)
        ex.explore("irq")
        assert ex.reporter.chains == [("irq", "lock_b"), ("irq", "lock_a")]

    def test_unreachable_block_ignored(self, sink, irq_policy):
        prog, fn, _ = self._diamond()
        dead = fn.add_block("dead")
        dead.add_call(prog.declare("mutex_acquire"))
        assert explorer_for(prog, irq_policy, sink).explore("irq") is True


class TestUnresolvedAndMissing:

    def test_unresolved_calls_skipped(self, sink, irq_policy):
        prog = make_program({"irq": [None, "a"], "a": ["mutex_acquire"]})
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is False
        assert ex.skipped_calls == 1

    def test_declaration_contributes_nothing(self, sink, irq_policy):
        prog = make_program({"irq": ["external"], "external": None})
        ex = explorer_for(prog, irq_policy, sink)
        assert ex.explore("irq") is True
        assert prog.lookup_function("external") in ex.visited_functions

    def test_missing_entry_is_vacuous_success(self, sink, irq_policy, caplog):
        prog = make_program({"main": ["mutex_acquire"]})
        ex = explorer_for(prog, irq_policy, sink)
        with caplog.at_level(logging.INFO, logger="ctxguard"):
            assert ex.explore("irq") is True
        assert sink.lines == []
        assert "irq" in caplog.text


class TestDisplayNames:

    def test_policy_matches_display_names(self, sink):
        prog = make_program({
            "_Z3irqv": ["_ZN5Mutex7AcquireEv"],
        })
        resolver = DictResolver({
            "_Z3irqv": "irq()",
            "_ZN5Mutex7AcquireEv": "Mutex::Acquire()",
        })
        policy = Policy(entry_points={"irq()"}, blacklist={"Mutex::Acquire()"})
        ex = explorer_for(prog, policy, sink, resolver)
        assert ex.explore("irq()") is False
        assert ex.reporter.chains == [("irq()", "Mutex::Acquire()")]

    def test_entry_found_by_raw_symbol_first(self, sink):
        prog = make_program({"_Z3irqv": [], "irq": ["lock"]})
        resolver = DictResolver({"_Z3irqv": "irq"})
        ex = explorer_for(prog, Policy(blacklist={"lock"}), sink, resolver)
        assert ex.resolve_entry("irq") is prog.lookup_function("irq")

    def test_entry_found_by_display_name(self, sink):
        prog = make_program({"_Z3irqv": []})
        resolver = DictResolver({"_Z3irqv": "irq()"})
        ex = explorer_for(prog, Policy(), sink, resolver)
        assert ex.resolve_entry("irq()") is prog.lookup_function("_Z3irqv")
        assert ex.resolve_entry("nmi()") is None
