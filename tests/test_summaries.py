# tests/test_summaries.py
"""
Tests for procedure summaries and the thread-safe summary cache.
"""

import dataclasses
import threading

import pytest

from svctaint.access_tree import AccessTree, Base
from svctaint.listing import parse_listing
from svctaint.program import BasicBlock, Procedure, Return
from svctaint.summaries import (
    ProcedureSummary,
    SummaryCache,
    footprint_state,
    output_bases,
)
from svctaint.taint_lattice import OriginKind

from tests.conftest import SERVICE_PRELUDE, analyze_listing, service

TIMEOUT = 10


def _proc(name):
    return Procedure(name, blocks=(BasicBlock("b0", (Return(),)),))


class TestSummaryData:

    def test_provisional_is_clean(self):
        summary = ProcedureSummary.provisional_for("ns::f")
        assert summary.provisional
        assert summary.return_tree is None
        assert summary.obligations == frozenset()
        assert summary.findings == ()

    def test_summaries_are_immutable(self):
        summary = ProcedureSummary("ns::f", {Base.return_slot(): AccessTree.empty()})
        with pytest.raises(dataclasses.FrozenInstanceError):
            summary.provisional = True
        with pytest.raises(TypeError):
            summary.outputs[Base.receiver()] = AccessTree.empty()

    def test_output_bases(self):
        program = parse_listing(service('''
            public method m(a: string, &out: string) -> void { return; }
        '''))
        proc = program.procedures["ns::Svc::m"]
        assert output_bases(proc) == [
            Base.return_slot(), Base.parameter("out", 1), Base.receiver()]

    def test_footprint_state_follows_struct_fields(self):
        program = parse_listing('''
            struct ns::req { s: string; i: int; }
            function ns::f(r: ns::req, n: int) -> void { return; }
        ''')
        proc = program.procedures["ns::f"]
        state = footprint_state(program, proc, 3)
        tree = state.tree(Base.parameter("r", 0))
        assert set(tree.children) == {"s", "i"}
        (trace,) = tree.children["s"].value
        assert trace.origin.kind is OriginKind.FOOTPRINT
        assert trace.origin.path == ("s",)
        # scalars get a footprint too; clean actuals make them clean
        assert state.tree(Base.parameter("n", 1)).value.has_footprints()


class TestCache:

    def test_memoized(self):
        calls = []

        def builder(proc):
            calls.append(proc.name)
            return ProcedureSummary(proc.name)

        cache = SummaryCache(builder)
        proc = _proc("ns::f")
        first = cache.summary_for(proc)
        assert cache.summary_for(proc) is first
        assert calls == ["ns::f"]
        assert proc in cache
        assert len(cache) == 1

    def test_bodiless_procedure_has_no_summary(self):
        cache = SummaryCache(lambda p: pytest.fail("must not build"))
        assert cache.summary_for(Procedure("extern_fn")) is None

    def test_recursion_yields_provisional(self):
        cache = None
        inner = []

        def builder(proc):
            inner.append(cache.summary_for(proc))
            return ProcedureSummary(proc.name)

        cache = SummaryCache(builder)
        outer = cache.summary_for(_proc("ns::rec"))
        assert inner[0].provisional
        assert not outer.provisional
        assert cache.provisional_count == 1
        assert cache.build_counts == {"ns::rec": 1}

    def test_depth_limit(self):
        procs = {name: _proc(name) for name in ("a", "b", "c")}
        chain = {"a": "b", "b": "c"}
        seen = {}

        def builder(proc):
            nxt = chain.get(proc.name)
            if nxt is not None:
                seen[nxt] = cache.summary_for(procs[nxt])
            return ProcedureSummary(proc.name)

        cache = SummaryCache(builder, max_depth=2)
        cache.summary_for(procs["a"])
        assert not seen["b"].provisional
        assert seen["c"].provisional

    def test_provisional_summaries_are_not_cached(self):
        calls = []

        def builder(proc):
            calls.append(proc.name)
            return ProcedureSummary.provisional_for(proc.name)

        cache = SummaryCache(builder)
        proc = _proc("ns::f")
        cache.summary_for(proc)
        cache.summary_for(proc)
        assert calls == ["ns::f", "ns::f"]
        assert proc not in cache

    def test_failed_build_is_retried(self):
        attempts = []

        def builder(proc):
            attempts.append(proc.name)
            if len(attempts) == 1:
                raise RuntimeError("boom")
            return ProcedureSummary(proc.name)

        cache = SummaryCache(builder)
        proc = _proc("ns::f")
        with pytest.raises(RuntimeError):
            cache.summary_for(proc)
        assert not cache.summary_for(proc).provisional
        assert len(attempts) == 2

    def test_clear(self):
        cache = SummaryCache(lambda p: ProcedureSummary(p.name))
        cache.summary_for(_proc("ns::f"))
        cache.clear()
        assert len(cache) == 0
        assert cache.build_counts == {}
        assert cache.all_summaries() == {}


class TestConcurrency:

    def test_concurrent_requests_build_once(self):
        calls = []
        started = threading.Event()
        release = threading.Event()

        def builder(proc):
            calls.append(proc.name)
            started.set()
            release.wait(TIMEOUT)
            return ProcedureSummary(proc.name)

        cache = SummaryCache(builder)
        proc = _proc("ns::shared")
        results = []
        lock = threading.Lock()

        def request():
            summary = cache.summary_for(proc)
            with lock:
                results.append(summary)

        threads = [threading.Thread(target=request) for _ in range(8)]
        for t in threads:
            t.start()
        assert started.wait(TIMEOUT)
        release.set()
        for t in threads:
            t.join(TIMEOUT)

        assert not any(t.is_alive() for t in threads)
        assert calls == ["ns::shared"]
        assert len(results) == 8
        assert all(r is results[0] for r in results)
        assert cache.build_counts == {"ns::shared": 1}

    def test_cross_thread_cycle_does_not_deadlock(self):
        procs = {"a": _proc("a"), "b": _proc("b")}
        other = {"a": "b", "b": "a"}
        started = {"a": threading.Event(), "b": threading.Event()}

        def builder(proc):
            started[proc.name].set()
            started[other[proc.name]].wait(TIMEOUT)
            cache.summary_for(procs[other[proc.name]])
            return ProcedureSummary(proc.name)

        cache = SummaryCache(builder)
        threads = [threading.Thread(target=cache.summary_for, args=(p,))
                   for p in procs.values()]
        for t in threads:
            t.start()
        for t in threads:
            t.join(TIMEOUT)

        assert not any(t.is_alive() for t in threads)
        assert cache.provisional_count == 1
        assert set(cache.all_summaries()) == {"a", "b"}


class TestRecursivePrograms:

    def test_self_recursion_terminates(self):
        result = analyze_listing(SERVICE_PRELUDE + '''
            function ns::rec(v: string) -> string {
                b0: goto b1, b2;
                b1: return v;
                b2: return ns::rec(v);
            }
        ''' + service('''
            public method m(x: string) -> void { system(ns::rec(x)); }
        '''))
        assert result.issue_types() == ["REMOTE_CODE_EXECUTION_RISK"]
        assert result.statistics["provisional_summaries"] >= 1

    def test_mutual_recursion_terminates(self):
        result = analyze_listing(SERVICE_PRELUDE + '''
            function ns::even(v: string) -> string { return ns::odd(v); }
            function ns::odd(v: string) -> string {
                b0: goto b1, b2;
                b1: return v;
                b2: return ns::even(v);
            }
        ''' + service('''
            public method m(x: string) -> void { system(ns::even(x)); }
        '''))
        assert result.issue_types() == ["REMOTE_CODE_EXECUTION_RISK"]

    def test_unproductive_recursion(self):
        result = analyze_listing(SERVICE_PRELUDE + '''
            function ns::spin(v: string) -> string { return ns::spin(v); }
        ''' + service('''
            public method m(x: string) -> void { system(ns::spin(x)); }
        '''))
        assert not result.has_findings()

    def test_summary_depth_limit(self):
        listing = SERVICE_PRELUDE + '''
            function ns::outer(v: string) -> string { return ns::inner(v); }
            function ns::inner(v: string) -> string { return v; }
        ''' + service('''
            public method m(x: string) -> void { system(ns::outer(x)); }
        ''')
        assert analyze_listing(listing).has_findings()
        limited = analyze_listing(listing, max_summary_depth=1)
        assert not limited.has_findings()
        assert limited.statistics["provisional_summaries"] >= 1

    def test_each_summary_built_once(self):
        result = analyze_listing(SERVICE_PRELUDE + '''
            function ns::id(v: string) -> string { return v; }
        ''' + service('''
            public method a(x: string) -> void { system(ns::id(x)); }
            public method b(x: string) -> void { system(ns::id(x)); }
        '''), workers=4)
        stats = result.statistics
        assert stats["summary_builds"] == stats["summaries"] == 3
        assert len(result.findings) == 2
