"""
svctaint/summaries.py
=====================

Procedure summaries and the run-wide summary cache.

A summary describes a procedure's effect in terms of its *own* formals.
The procedure is analysed once from a footprint state in which every formal
(and the receiver) holds a symbolic trace naming it:

    p        ↦ ★{Footprint<p>}                 scalar / opaque formal
    req      ↦ { s ↦ ★{Footprint<req.s>},      struct formal, one footprint
                 i ↦ ★{Footprint<req.i>} }     per field (bounded depth)

What the exit state holds in the output slots (return value, by-reference
parameters, receiver) is the summary's transfer function; footprints that
reach a sink become *sink obligations*; findings caused by the procedure's
own sources are *unconditional findings*.  At a call site each footprint is
replaced by the caller's value at ``actual argument + footprint path``, so
one summary serves every call site.

Cache semantics
---------------
* memoized by procedure identity for the lifetime of one run;
* at most one builder per procedure, concurrent requesters block on the
  in-flight build;
* recursion (re-entry on the same thread), a build deeper than
  ``max_summary_depth``, or a wait that would close a wait-for cycle between
  threads yields the *provisional* summary (all outputs ``Clean``, no
  obligations, no findings).  Provisional summaries are never cached;
* published summaries are immutable.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import (
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
)

from .access_tree import AccessTree, Base, TaintState
from .findings import Finding
from .program import Procedure, Program, SourceLocation
from .taint_lattice import (
    FOOTPRINT,
    RECEIVER_INDEX,
    Origin,
    TaintKind,
    TaintTrace,
    TaintValue,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# §1  SUMMARY DATA
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SinkObligation:
    """A formal of the summarized procedure reaching a sink.

    Attributes
    ----------
    trace : TaintTrace
        The footprint trace, carrying the sanitizers applied on the way.
    sink_kind : TaintKind
        Kind accepted by the sink.
    sink : str
        Name of the sink that was called.
    location : SourceLocation
        The sink's call site.
    procedure : str
        Procedure containing the sink call.
    """
    trace: TaintTrace
    sink_kind: TaintKind
    sink: str
    location: SourceLocation
    procedure: str


@dataclass(frozen=True, eq=False)
class ProcedureSummary:
    """Immutable footprint-based summary of one procedure."""

    procedure: str
    outputs: Mapping[Base, AccessTree] = field(default_factory=dict)
    obligations: FrozenSet[SinkObligation] = frozenset()
    findings: Tuple[Finding, ...] = ()
    provisional: bool = False
    converged: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "outputs",
                           MappingProxyType(dict(self.outputs)))
        object.__setattr__(self, "obligations", frozenset(self.obligations))
        object.__setattr__(self, "findings", tuple(self.findings))

    @classmethod
    def provisional_for(cls, procedure: str) -> "ProcedureSummary":
        """Every output ``Clean``, no obligations, no findings."""
        return cls(procedure, provisional=True)

    @classmethod
    def from_exit_state(
        cls,
        proc: Procedure,
        exit_state: TaintState,
        obligations: Iterable[SinkObligation] = (),
        findings: Iterable[Finding] = (),
        converged: bool = True,
    ) -> "ProcedureSummary":
        outputs: Dict[Base, AccessTree] = {}
        for base in output_bases(proc):
            tree = exit_state.tree(base)
            if tree is not None:
                outputs[base] = tree
        return cls(proc.name, outputs, frozenset(obligations),
                   tuple(findings), False, converged)

    def output(self, base: Base) -> Optional[AccessTree]:
        return self.outputs.get(base)

    @property
    def return_tree(self) -> Optional[AccessTree]:
        return self.outputs.get(Base.return_slot())

    def __repr__(self) -> str:
        tag = " provisional" if self.provisional else ""
        return (f"ProcedureSummary({self.procedure}{tag}, "
                f"outputs={len(self.outputs)}, "
                f"obligations={len(self.obligations)}, "
                f"findings={len(self.findings)})")


def output_bases(proc: Procedure) -> List[Base]:
    """Return slot, by-reference parameters and (for methods) the receiver."""
    bases = [Base.return_slot()]
    bases.extend(Base.parameter(p.name, i) for i, p in enumerate(proc.params)
                 if p.by_ref)
    if proc.is_method:
        bases.append(Base.receiver())
    return bases


# ═══════════════════════════════════════════════════════════════════════════
# §2  TYPED STATE CONSTRUCTION
# ═══════════════════════════════════════════════════════════════════════════

LeafFactory = Callable[[Tuple[str, ...], str, bool], TaintValue]


def typed_tree(program: Program, type_name: str, leaf_for: LeafFactory,
               max_depth: int, path: Tuple[str, ...] = ()) -> AccessTree:
    """
    Build an access tree following the fields of *type_name*.

    Record types (structs, classes with fields) get one child per field;
    anything else, and any record at the depth bound, is a starred leaf.
    ``leaf_for(path, type_name, abstracted)`` supplies the leaf values.
    """
    fields = program.record_fields(type_name)
    if not fields:
        return AccessTree.leaf(leaf_for(path, type_name, False))
    if len(path) >= max_depth:
        return AccessTree.leaf(leaf_for(path, type_name, True))
    return AccessTree.node({
        name: typed_tree(program, ftype, leaf_for, max_depth, path + (name,))
        for name, ftype in fields.items()
    })


def footprint_state(program: Program, proc: Procedure,
                    max_depth: int) -> TaintState:
    """Initial state of a summary build: a footprint for every formal."""
    trees: Dict[Base, AccessTree] = {}

    def footprints(param: str, index: int) -> LeafFactory:
        def make(path: Tuple[str, ...], _type: str,
                 abstracted: bool) -> TaintValue:
            return TaintValue.tainted(FOOTPRINT, Origin.footprint(
                proc.name, param, index, path, abstracted))
        return make

    for index, param in enumerate(proc.params):
        trees[Base.parameter(param.name, index)] = typed_tree(
            program, param.type_name, footprints(param.name, index), max_depth)
    if proc.is_method:
        trees[Base.receiver()] = typed_tree(
            program, proc.declaring_class, footprints("this", RECEIVER_INDEX),
            max_depth)
    return TaintState(trees, max_depth)


# ═══════════════════════════════════════════════════════════════════════════
# §3  SUMMARY CACHE
# ═══════════════════════════════════════════════════════════════════════════

class _InFlight:
    __slots__ = ("event", "owner")

    def __init__(self, owner: int) -> None:
        self.event = threading.Event()
        self.owner = owner


class SummaryCache:
    """Run-wide cache of :class:`ProcedureSummary` objects.

    Parameters
    ----------
    builder : callable
        ``builder(procedure) -> ProcedureSummary``; may itself request
        summaries from this cache (mutual recursion with the propagator).
    max_depth : int
        Maximum number of nested builds on one thread.
    """

    def __init__(self, builder: Callable[[Procedure], ProcedureSummary],
                 max_depth: int = 32) -> None:
        self._builder = builder
        self.max_depth = max_depth
        self._lock = threading.Lock()
        self._cache: Dict[str, ProcedureSummary] = {}
        self._in_flight: Dict[str, _InFlight] = {}
        self._waiting_on: Dict[int, int] = {}
        self._local = threading.local()
        self.build_counts: Dict[str, int] = {}
        self.provisional_count = 0

    # ---- per-thread build stack -------------------------------------------

    def _stack(self) -> List[str]:
        stack = getattr(self._local, "stack", None)
        if stack is None:
            stack = self._local.stack = []
        return stack

    def _closes_cycle(self, me: int, owner: int) -> bool:
        seen = set()
        current: Optional[int] = owner
        while current is not None and current not in seen:
            if current == me:
                return True
            seen.add(current)
            current = self._waiting_on.get(current)
        return False

    def _provisional(self, proc: Procedure, reason: str) -> ProcedureSummary:
        logger.debug("provisional summary for %s (%s)", proc.name, reason)
        with self._lock:
            self.provisional_count += 1
        return ProcedureSummary.provisional_for(proc.name)

    # ---- public API -------------------------------------------------------

    def summary_for(self, proc: Procedure) -> Optional[ProcedureSummary]:
        """
        Return the summary of *proc*, building it on first request.

        Returns ``None`` for procedures without a body.
        """
        if not proc.has_body:
            return None
        key = proc.name
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        stack = self._stack()
        if key in stack:
            return self._provisional(proc, "recursive call")
        if len(stack) >= self.max_depth:
            logger.warning("summary depth limit %d reached at %s",
                           self.max_depth, proc.name)
            return self._provisional(proc, "depth limit")

        me = threading.get_ident()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            flight = self._in_flight.get(key)
            if flight is None:
                flight = self._in_flight[key] = _InFlight(me)
                building = True
            else:
                if self._closes_cycle(me, flight.owner):
                    building = None
                else:
                    self._waiting_on[me] = flight.owner
                    building = False

        if building is None:
            return self._provisional(proc, "cross-thread cycle")
        if building:
            return self._build(proc, flight)

        flight.event.wait()
        with self._lock:
            self._waiting_on.pop(me, None)
            cached = self._cache.get(key)
        if cached is None:
            return self._provisional(proc, "build failed on another thread")
        return cached

    def _build(self, proc: Procedure, flight: _InFlight) -> ProcedureSummary:
        stack = self._stack()
        stack.append(proc.name)
        summary: Optional[ProcedureSummary] = None
        try:
            logger.debug("building summary for %s", proc.name)
            summary = self._builder(proc)
        finally:
            stack.pop()
            with self._lock:
                if summary is not None and not summary.provisional:
                    self._cache[proc.name] = summary
                self.build_counts[proc.name] = \
                    self.build_counts.get(proc.name, 0) + 1
                del self._in_flight[proc.name]
            flight.event.set()
        return summary

    def __contains__(self, proc: Procedure) -> bool:
        return proc.name in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self.build_counts.clear()
            self.provisional_count = 0

    def all_summaries(self) -> Dict[str, ProcedureSummary]:
        with self._lock:
            return dict(self._cache)


__all__ = [
    "SinkObligation",
    "ProcedureSummary",
    "output_bases",
    "typed_tree",
    "footprint_state",
    "SummaryCache",
]
