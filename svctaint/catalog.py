#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
svctaint/catalog.py
═══════════════════

The registry of sources, sinks and sanitizers.

Each entry pairs a method pattern with a *role*.  Roles form a closed
tagged union, and the propagator dispatches on them by pattern matching:

    Role = Source(kind, position)          taints a call result / out-arg
         | Sink(kind, matcher)             flags tainted arguments
         | Sanitizer(kind, position)       clears one kind from a value

A sink's matcher is either :class:`AnyArgument` (every listed position is
sink-relevant) or :class:`ConstantArgument` (one position is sink-relevant,
but only when another, *key* argument folds to an accepted constant).

Lookup order
────────────
    1. configured entries  (exact qualified name, or an fnmatch pattern)
    2. built-in entries    (well-known dangerous APIs, exact name)

When any configured entry matches a call, built-ins are not consulted, so
configuration can always override the defaults.

Argument positions count explicit arguments only; the receiver of a method
call is never position 0.

License: MIT
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import (
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
    Union,
)

from .taint_lattice import (
    FILESYSTEM_PATH,
    NETWORK_URL,
    SHELL_COMMAND,
    SQL_QUERY,
    USER_CONTROLLED,
    TaintKind,
)

logger = logging.getLogger(__name__)


# Position tokens used in addition to integer argument indices.
RETURN = "return"
RECEIVER = "this"

Position = Union[int, str]


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — ROLES
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AnyArgument:
    """Every argument at one of *positions* is sink-relevant."""
    positions: Tuple[int, ...] = (0,)


@dataclass(frozen=True)
class ConstantArgument:
    """
    The argument at *position* is sink-relevant when the argument at
    *key_position* folds to a value in *accepted*.
    """
    position: int
    key_position: int
    accepted: FrozenSet[int] = field(default_factory=frozenset)


Matcher = Union[AnyArgument, ConstantArgument]


@dataclass(frozen=True)
class Source:
    """
    Attributes:
        kind: The kind of the traces introduced
        position: ``"return"`` for the call result, an argument index for an
                  out-argument, or ``"this"`` for the receiver
    """
    kind: TaintKind = USER_CONTROLLED
    position: Position = RETURN


@dataclass(frozen=True)
class Sink:
    kind: TaintKind
    matcher: Matcher = field(default_factory=AnyArgument)

    @property
    def requires_constant(self) -> bool:
        """Whether matching depends on a statically folded key argument."""
        return isinstance(self.matcher, ConstantArgument)

    @property
    def accepted_values(self) -> FrozenSet[int]:
        if isinstance(self.matcher, ConstantArgument):
            return self.matcher.accepted
        return frozenset()

    @property
    def argument_positions(self) -> Tuple[int, ...]:
        if isinstance(self.matcher, ConstantArgument):
            return (self.matcher.position,)
        return self.matcher.positions


@dataclass(frozen=True)
class Sanitizer:
    """The result of the call is *position*'s argument, sanitized for *kind*."""
    kind: TaintKind
    position: int = 0


Role = Union[Source, Sink, Sanitizer]


@dataclass(frozen=True)
class CatalogEntry:
    """
    A method pattern bound to a role.

    Attributes:
        pattern: Qualified method name (``ns::Cls::m``), bare function name,
                 or an fnmatch pattern (``ns::*::execute``)
        role: What calls matching *pattern* do to taint
        configured: Whether the entry comes from configuration
        description: Free-form note shown in reports
    """
    pattern: str
    role: Role
    configured: bool = False
    description: str = ""

    @property
    def is_wildcard(self) -> bool:
        return any(ch in self.pattern for ch in "*?[")

    def matches(self, name: str) -> bool:
        if self.pattern == name:
            return True
        return self.is_wildcard and fnmatch.fnmatchcase(name, self.pattern)

    def entry_id(self) -> str:
        role = type(self.role).__name__.lower()
        return f"{role}:{self.pattern}:{self.role.kind.name}"


@dataclass(frozen=True)
class ParameterSource:
    """
    A configured user-controlled formal.

    ``position`` is a parameter index, ``"this"``, or ``None`` for every
    formal of the method.
    """
    method: str
    position: Optional[Position] = None
    kind: TaintKind = USER_CONTROLLED

    def covers(self, index: int) -> bool:
        return self.position is None or self.position == index

    def matches(self, name: str) -> bool:
        if self.method == name:
            return True
        return any(ch in self.method for ch in "*?[") \
            and fnmatch.fnmatchcase(name, self.method)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — THE CATALOG
# ═══════════════════════════════════════════════════════════════════════════

class Catalog:
    """
    Registry of roles, keyed by method.

    A catalog belongs to one analysis run; it is built from configuration
    plus the built-in entries and never mutated while the run is going.
    """

    def __init__(self) -> None:
        self._configured: List[CatalogEntry] = []
        self._builtin: Dict[str, List[CatalogEntry]] = {}
        self._parameter_sources: List[ParameterSource] = []

    # ─────────────────────────────────────────────────────────────────
    #  Registration methods
    # ─────────────────────────────────────────────────────────────────

    def add_entry(self, entry: CatalogEntry) -> 'Catalog':
        """
        Register an entry.

        Args:
            entry: The entry; configured entries take priority on lookup

        Returns:
            self for method chaining
        """
        if entry.configured:
            self._configured.append(entry)
        else:
            self._builtin.setdefault(entry.pattern, []).append(entry)
        return self

    def add_source(self, method: str, kind: TaintKind = USER_CONTROLLED,
                   position: Position = RETURN,
                   configured: bool = True) -> 'Catalog':
        return self.add_entry(CatalogEntry(method, Source(kind, position),
                                           configured))

    def add_sink(self, method: str, kind: TaintKind,
                 matcher: Optional[Matcher] = None,
                 configured: bool = True) -> 'Catalog':
        return self.add_entry(CatalogEntry(
            method, Sink(kind, matcher or AnyArgument()), configured))

    def add_sanitizer(self, method: str, kind: TaintKind, position: int = 0,
                      configured: bool = True) -> 'Catalog':
        return self.add_entry(CatalogEntry(method, Sanitizer(kind, position),
                                           configured))

    def add_parameter_source(self, source: ParameterSource) -> 'Catalog':
        self._parameter_sources.append(source)
        return self

    # ─────────────────────────────────────────────────────────────────
    #  Queries
    # ─────────────────────────────────────────────────────────────────

    def lookup(self, name: str) -> List[Role]:
        """
        Roles of the method called *name* (qualified or bare).

        Configured entries win: built-ins are only consulted when no
        configured entry matches.
        """
        configured = [e.role for e in self._configured if e.matches(name)]
        if configured:
            return configured
        return [e.role for e in self._builtin.get(name, ())]

    def sources_for(self, name: str) -> List[Source]:
        return [r for r in self.lookup(name) if isinstance(r, Source)]

    def sinks_for(self, name: str) -> List[Sink]:
        return [r for r in self.lookup(name) if isinstance(r, Sink)]

    def sanitizers_for(self, name: str) -> List[Sanitizer]:
        return [r for r in self.lookup(name) if isinstance(r, Sanitizer)]

    def parameter_sources(self, method: str) -> List[ParameterSource]:
        """Configured user-controlled formals of *method*."""
        return [s for s in self._parameter_sources if s.matches(method)]

    def has_parameter_sources(self, method: str) -> bool:
        return any(s.matches(method) for s in self._parameter_sources)

    def configured_entries(self) -> List[CatalogEntry]:
        return list(self._configured)

    def entries(self) -> Iterator[CatalogEntry]:
        yield from self._configured
        for bucket in self._builtin.values():
            yield from bucket

    def __len__(self) -> int:
        return len(self._configured) + sum(len(b) for b in self._builtin.values())

    def __repr__(self) -> str:
        return (f"Catalog(configured={len(self._configured)}, "
                f"builtin={len(self) - len(self._configured)}, "
                f"parameter_sources={len(self._parameter_sources)})")

    @classmethod
    def with_builtins(cls) -> 'Catalog':
        catalog = cls()
        for entry in builtin_entries():
            catalog.add_entry(entry)
        return catalog


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — BUILT-IN ENTRIES
# ═══════════════════════════════════════════════════════════════════════════

CURLOPT_URL = 10002

_SHELL_SINKS = (
    "system", "std::system", "popen",
    "execl", "execlp", "execle", "execv", "execvp", "execvpe", "execve",
)

# name -> query argument
_SQL_SINKS = (
    ("__infer_sql_sink", 0),
    ("mysql_query", 1),
    ("mysql_real_query", 1),
    ("sqlite3_exec", 1),
    ("sqlite3_prepare", 1),
    ("sqlite3_prepare_v2", 1),
    ("PQexec", 1),
)

# name -> path arguments
_FILE_SINKS = (
    ("open", (0,)),
    ("openat", (1,)),
    ("creat", (0,)),
    ("fopen", (0,)),
    ("freopen", (0,)),
    ("rename", (0, 1)),
)

_STREAM_TYPES = ("ofstream", "ifstream", "fstream")


def _stream_methods() -> Iterator[str]:
    for stream in _STREAM_TYPES:
        for spelling in (stream, f"basic_{stream}"):
            yield f"std::{spelling}::{spelling}"
            yield f"std::{spelling}::open"


def builtin_entries() -> List[CatalogEntry]:
    """
    The built-in catalog.

    Returns:
        Entries for well-known process, SQL, filesystem and URL sinks, the
        shell/SQL sanitizers and the environment-variable sources
    """
    entries: List[CatalogEntry] = []

    for name in _SHELL_SINKS:
        entries.append(CatalogEntry(name, Sink(SHELL_COMMAND, AnyArgument((0,))),
                                    description="process execution"))
    for name, pos in _SQL_SINKS:
        entries.append(CatalogEntry(name, Sink(SQL_QUERY, AnyArgument((pos,))),
                                    description="raw SQL execution"))
    for name, positions in _FILE_SINKS:
        entries.append(CatalogEntry(name, Sink(FILESYSTEM_PATH,
                                               AnyArgument(positions)),
                                    description="file creation or open"))
    for name in _stream_methods():
        entries.append(CatalogEntry(name, Sink(FILESYSTEM_PATH,
                                               AnyArgument((0,))),
                                    description="file stream open"))

    entries.append(CatalogEntry(
        "curl_easy_setopt",
        Sink(NETWORK_URL, ConstantArgument(position=2, key_position=1,
                                           accepted=frozenset({CURLOPT_URL}))),
        description="libcurl CURLOPT_URL",
    ))

    entries.append(CatalogEntry("__infer_shell_sanitizer",
                                Sanitizer(SHELL_COMMAND, 0)))
    entries.append(CatalogEntry("__infer_sql_sanitizer",
                                Sanitizer(SQL_QUERY, 0)))

    for name in ("getenv", "secure_getenv"):
        entries.append(CatalogEntry(name, Source(USER_CONTROLLED, RETURN),
                                    description="environment variable"))
    return entries


def merge_roles(roles: Iterable[Role]) -> Tuple[List[Source], List[Sink],
                                                List[Sanitizer]]:
    """Split a lookup result by role."""
    sources: List[Source] = []
    sinks: List[Sink] = []
    sanitizers: List[Sanitizer] = []
    for role in roles:
        if isinstance(role, Source):
            sources.append(role)
        elif isinstance(role, Sink):
            sinks.append(role)
        elif isinstance(role, Sanitizer):
            sanitizers.append(role)
    return sources, sinks, sanitizers


__all__ = [
    "RETURN",
    "RECEIVER",
    "Position",
    "AnyArgument",
    "ConstantArgument",
    "Matcher",
    "Source",
    "Sink",
    "Sanitizer",
    "Role",
    "CatalogEntry",
    "ParameterSource",
    "Catalog",
    "CURLOPT_URL",
    "builtin_entries",
    "merge_roles",
]
