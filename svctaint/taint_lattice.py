#!/usr/bin/env python3
# -*- coding: utf-8 -*-
r"""
svctaint/taint_lattice.py
═════════════════════════

The abstract values tracked by the taint analysis.

A taint value is a finite set of *traces*.  Every trace remembers which
kind of untrusted data it carries, where that data entered the program, and
which kinds it has already been sanitized for.  Set union is the join, the
empty set is ``Clean`` (the bottom element).

    ┌─────────────────────────────────────────────────────────────────┐
    │                        TAINT LATTICE                            │
    │                                                                 │
    │          { t1, t2, … }          (powerset of traces, ⊆)         │
    │               ⋮                                                 │
    │     {UserControlled@p}   {SqlQuery@getenv, sanitized:Shell}     │
    │               \                 /                               │
    │                      { }  = Clean  (⊥)                          │
    └─────────────────────────────────────────────────────────────────┘

Sanitization is kind-specific: sanitizing for ``ShellCommand`` records the
kind on every trace but leaves the traces in place, so the same value still
reaches a ``SqlQuery`` sink as tainted.

``UserControlled`` data is relevant to every sink kind; every other kind is
relevant only to sinks of the same kind.  Footprint traces (symbolic formal
parameters inside procedure summaries) are relevant to every sink kind until
they are instantiated with the caller's actual values.

License: MIT
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    Optional,
    Tuple,
)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — TAINT KINDS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class TaintKind:
    """
    A category of untrusted data.

    The set of kinds is open: configuration may introduce new ones by name.
    Use :func:`kind_named` to obtain the canonical instance for a name.

    Attributes:
        name: The kind's display name (e.g. ``"ShellCommand"``)
        universal: Whether data of this kind is relevant to every sink
    """
    name: str
    universal: bool = False

    def covers(self, sink_kind: 'TaintKind') -> bool:
        """Check whether data of this kind matters to a sink of *sink_kind*."""
        return self.universal or self.name == sink_kind.name

    def __repr__(self) -> str:
        return f"TaintKind({self.name})"

    def __str__(self) -> str:
        return self.name


SHELL_COMMAND = TaintKind("ShellCommand")
SQL_QUERY = TaintKind("SqlQuery")
FILESYSTEM_PATH = TaintKind("FileSystemPath")
NETWORK_URL = TaintKind("NetworkURL")
USER_CONTROLLED = TaintKind("UserControlled", universal=True)

# Placeholder kind of a symbolic formal; replaced on instantiation.
FOOTPRINT = TaintKind("Footprint", universal=True)

WELL_KNOWN_KINDS: Dict[str, TaintKind] = {
    k.name: k
    for k in (SHELL_COMMAND, SQL_QUERY, FILESYSTEM_PATH, NETWORK_URL,
              USER_CONTROLLED)
}


def kind_named(name: str) -> TaintKind:
    """
    Return the canonical kind for *name*.

    Names are matched case-insensitively against the well-known kinds; any
    other name yields a new, non-universal kind.
    """
    for known in WELL_KNOWN_KINDS.values():
        if known.name.lower() == name.lower():
            return known
    return TaintKind(name)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — ORIGINS
# ═══════════════════════════════════════════════════════════════════════════

class OriginKind(Enum):
    """Where a trace entered the program."""
    ENDPOINT_PARAMETER = "endpoint-parameter"       # implicit service source
    CONFIGURED_PARAMETER = "configured-parameter"   # explicit config source
    SOURCE_CALL = "source-call"                     # return/out-arg of a source
    FOOTPRINT = "footprint"                         # symbolic formal (summaries)


# Parameter index used for the receiver (``this``) in footprints.
RECEIVER_INDEX = -1


@dataclass(frozen=True, slots=True)
class Origin:
    """
    The provenance of a trace.

    Attributes:
        kind: What sort of origin this is
        procedure: Qualified name of the procedure owning the parameter, or
                   containing the source call
        parameter: Parameter name (parameter and footprint origins)
        index: Parameter index (``RECEIVER_INDEX`` for ``this``)
        callee: Qualified name of the source method (source-call origins)
        location: Source location label of the call site, if known
        path: Field path below the parameter (footprints only)
        abstracted: Whether a footprint stands for the whole subtree at *path*
    """
    kind: OriginKind
    procedure: str = ""
    parameter: str = ""
    index: int = 0
    callee: str = ""
    location: str = ""
    path: Tuple[str, ...] = ()
    abstracted: bool = False

    @classmethod
    def endpoint_parameter(cls, procedure: str, parameter: str,
                           index: int) -> 'Origin':
        return cls(OriginKind.ENDPOINT_PARAMETER, procedure, parameter, index)

    @classmethod
    def configured_parameter(cls, procedure: str, parameter: str,
                             index: int) -> 'Origin':
        return cls(OriginKind.CONFIGURED_PARAMETER, procedure, parameter, index)

    @classmethod
    def source_call(cls, procedure: str, callee: str,
                    location: str = "") -> 'Origin':
        return cls(OriginKind.SOURCE_CALL, procedure, callee=callee,
                   location=location)

    @classmethod
    def footprint(cls, procedure: str, parameter: str, index: int,
                  path: Tuple[str, ...] = (),
                  abstracted: bool = False) -> 'Origin':
        return cls(OriginKind.FOOTPRINT, procedure, parameter, index,
                   path=tuple(path), abstracted=abstracted)

    @property
    def is_footprint(self) -> bool:
        return self.kind is OriginKind.FOOTPRINT

    def describe(self) -> str:
        """Human-readable description used in reports."""
        if self.kind is OriginKind.SOURCE_CALL:
            where = f" at {self.location}" if self.location else ""
            return f"return value of {self.callee}(){where}"
        if self.kind is OriginKind.FOOTPRINT:
            dotted = ".".join((self.parameter,) + self.path)
            return f"formal {dotted} of {self.procedure}"
        label = ("endpoint parameter"
                 if self.kind is OriginKind.ENDPOINT_PARAMETER
                 else "user-controlled parameter")
        return f"{label} '{self.parameter}' of {self.procedure}"

    def __repr__(self) -> str:
        return f"Origin({self.describe()})"


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — TRACES
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class TaintTrace:
    """
    One strand of taint: a kind, an origin, and the sanitizers applied.

    Attributes:
        kind: The category of untrusted data
        origin: Where the data entered the program
        sanitizers: Kinds this strand has been sanitized for
    """
    kind: TaintKind
    origin: Origin
    sanitizers: FrozenSet[TaintKind] = field(default_factory=frozenset)

    def relevant_to(self, sink_kind: TaintKind) -> bool:
        """Check whether this trace matters to a sink of *sink_kind*."""
        return self.kind.covers(sink_kind)

    def sanitized_for(self, sink_kind: TaintKind) -> bool:
        return sink_kind in self.sanitizers

    def is_live_for(self, sink_kind: TaintKind) -> bool:
        """Relevant to the sink and not sanitized for it."""
        return self.relevant_to(sink_kind) and not self.sanitized_for(sink_kind)

    def with_sanitizer(self, kind: TaintKind) -> 'TaintTrace':
        if kind in self.sanitizers:
            return self
        return TaintTrace(self.kind, self.origin, self.sanitizers | {kind})

    def with_sanitizers(self, kinds: Iterable[TaintKind]) -> 'TaintTrace':
        extra = frozenset(kinds)
        if extra <= self.sanitizers:
            return self
        return TaintTrace(self.kind, self.origin, self.sanitizers | extra)

    def __repr__(self) -> str:
        if self.sanitizers:
            names = ",".join(sorted(k.name for k in self.sanitizers))
            return f"{self.kind.name}<{self.origin.describe()}; sanitized:{names}>"
        return f"{self.kind.name}<{self.origin.describe()}>"


# ═══════════════════════════════════════════════════════════════════════════
#  PART 4 — TAINT VALUES
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class TaintValue:
    """
    An element of the taint lattice: a set of traces.

    ``Clean`` is the empty set.  A value is *tainted for* a kind when it
    holds a live trace for that kind, and *sanitized for* a kind when every
    trace relevant to the kind has been sanitized for it.
    """
    traces: FrozenSet[TaintTrace] = field(default_factory=frozenset)

    # ─────────────────────────────────────────────────────────────────
    #  Factory methods
    # ─────────────────────────────────────────────────────────────────

    @classmethod
    def clean(cls) -> 'TaintValue':
        """Create the bottom element (no taint)."""
        return CLEAN

    @classmethod
    def tainted(cls, kind: TaintKind, origin: Origin) -> 'TaintValue':
        """Create a value carrying a single, unsanitized trace."""
        return cls(frozenset({TaintTrace(kind, origin)}))

    @classmethod
    def of(cls, traces: Iterable[TaintTrace]) -> 'TaintValue':
        traces = frozenset(traces)
        if not traces:
            return CLEAN
        return cls(traces)

    # ─────────────────────────────────────────────────────────────────
    #  Lattice operations
    # ─────────────────────────────────────────────────────────────────

    def join(self, other: 'TaintValue') -> 'TaintValue':
        """
        Least upper bound (⊔): set union of traces.

        Commutative and idempotent, with ``Clean`` as identity.
        """
        if not other.traces or other.traces <= self.traces:
            return self
        if not self.traces or self.traces <= other.traces:
            return other
        return TaintValue(self.traces | other.traces)

    def leq(self, other: 'TaintValue') -> bool:
        """Partial order (⊑): trace inclusion."""
        return self.traces <= other.traces

    # ─────────────────────────────────────────────────────────────────
    #  Predicates
    # ─────────────────────────────────────────────────────────────────

    def is_clean(self) -> bool:
        return not self.traces

    def is_tainted_for(self, sink_kind: TaintKind) -> bool:
        """At least one relevant trace has not been sanitized for the kind."""
        return any(t.is_live_for(sink_kind) for t in self.traces)

    def is_sanitized_for(self, sink_kind: TaintKind) -> bool:
        """Relevant traces exist and all of them are sanitized for the kind."""
        relevant = [t for t in self.traces if t.relevant_to(sink_kind)]
        return bool(relevant) and all(t.sanitized_for(sink_kind)
                                      for t in relevant)

    def has_footprints(self) -> bool:
        return any(t.origin.is_footprint for t in self.traces)

    # ─────────────────────────────────────────────────────────────────
    #  Operations
    # ─────────────────────────────────────────────────────────────────

    def sanitize(self, kind: TaintKind) -> 'TaintValue':
        """
        Apply a sanitizer for *kind*.

        Every trace records the sanitizer; no trace is dropped, so taint of
        any other kind stays observable.
        """
        if not self.traces:
            return self
        return TaintValue(frozenset(t.with_sanitizer(kind) for t in self.traces))

    def with_sanitizers(self, kinds: Iterable[TaintKind]) -> 'TaintValue':
        kinds = frozenset(kinds)
        if not kinds or not self.traces:
            return self
        return TaintValue(frozenset(t.with_sanitizers(kinds)
                                    for t in self.traces))

    def kinds(self) -> FrozenSet[TaintKind]:
        return frozenset(t.kind for t in self.traces)

    def origins(self) -> FrozenSet[Origin]:
        return frozenset(t.origin for t in self.traces)

    def concrete(self) -> 'TaintValue':
        """The traces that do not stem from symbolic formals."""
        return TaintValue.of(t for t in self.traces if not t.origin.is_footprint)

    def footprints(self) -> Iterator[TaintTrace]:
        return (t for t in self.traces if t.origin.is_footprint)

    def expand(
        self,
        resolve: Callable[[TaintTrace], Optional['TaintValue']],
    ) -> 'TaintValue':
        """
        Replace traces by the values *resolve* returns for them.

        ``resolve`` returns ``None`` to keep a trace unchanged.  Used to
        instantiate footprint traces with a caller's actual values.
        """
        result: set = set()
        for trace in self.traces:
            replacement = resolve(trace)
            if replacement is None:
                result.add(trace)
            else:
                result.update(replacement.traces)
        return TaintValue.of(result)

    def __iter__(self) -> Iterator[TaintTrace]:
        return iter(self.traces)

    def __len__(self) -> int:
        return len(self.traces)

    def __repr__(self) -> str:
        if not self.traces:
            return "Clean"
        inner = ", ".join(sorted(repr(t) for t in self.traces))
        return f"TaintValue({inner})"


CLEAN = TaintValue()


def join_all(values: Iterable[TaintValue]) -> TaintValue:
    """Join an iterable of values (``Clean`` when empty)."""
    result = CLEAN
    for value in values:
        result = result.join(value)
    return result


__all__ = [
    "TaintKind",
    "SHELL_COMMAND",
    "SQL_QUERY",
    "FILESYSTEM_PATH",
    "NETWORK_URL",
    "USER_CONTROLLED",
    "FOOTPRINT",
    "WELL_KNOWN_KINDS",
    "kind_named",
    "OriginKind",
    "Origin",
    "RECEIVER_INDEX",
    "TaintTrace",
    "TaintValue",
    "CLEAN",
    "join_all",
]
