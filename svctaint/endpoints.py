"""
svctaint.endpoints
==================

Discovery of service endpoints and configured entry points.

A class is a *service* when its capability set contains a recognized
service-interface capability.  The capability set of a class is its own tags
plus the tags *and names* of every transitive base class, so inheriting from
a marker interface such as ``facebook::fb303::cpp2::FacebookServiceSvIf``
is enough, however deep the hierarchy.

Every non-private method of a service, including those inherited from a
service base class, is an *endpoint*.  Its formals are untrusted by default;
the receiver and the return-output parameter (``_return``) never are.

Methods that configuration marks with explicit parameter sources are
*configured entry points*; they may be private, and their configured seeds
replace the implicit endpoint seeds.

Public API
----------
    EntryPoint          - one method to analyse, with its seeds
    Seed                - an untrusted formal and the origin it carries
    EndpointDiscoverer  - enumerates entry points once per run
    DEFAULT_SERVICE_CAPABILITIES
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .catalog import RECEIVER, Catalog
from .program import Procedure, Program
from .taint_lattice import (
    USER_CONTROLLED,
    Origin,
    TaintKind,
)

logger = logging.getLogger(__name__)


DEFAULT_SERVICE_CAPABILITIES: FrozenSet[str] = frozenset({
    "facebook::fb303::cpp2::FacebookServiceSvIf",
    "facebook::fb303::cpp2::FacebookServiceSvAsyncIf",
})

DEFAULT_RETURN_PARAMETER_NAMES: Tuple[str, ...] = ("_return",)


@dataclass(frozen=True)
class Seed:
    """An untrusted formal parameter and the origin its taint carries."""
    parameter: str
    index: int
    kind: TaintKind
    origin: Origin


@dataclass(frozen=True)
class EntryPoint:
    """
    A procedure analysed from the top with seeded formals.

    Attributes
    ----------
    procedure : Procedure
        The method or function to analyse.
    seeds : tuple of Seed
        Formals tainted on entry.
    service : str or None
        The service class for endpoints, ``None`` for configured entries.
    configured : bool
        Whether the seeds come from configuration.
    """
    procedure: Procedure
    seeds: Tuple[Seed, ...] = ()
    service: Optional[str] = None
    configured: bool = False

    @property
    def name(self) -> str:
        return self.procedure.name

    def __repr__(self) -> str:
        kind = "configured" if self.configured else "endpoint"
        return f"EntryPoint({self.name}, {kind}, seeds={len(self.seeds)})"


class EndpointDiscoverer:
    """Enumerates the entry points of a program."""

    def __init__(
        self,
        program: Program,
        catalog: Catalog,
        capabilities: Iterable[str] = DEFAULT_SERVICE_CAPABILITIES,
        return_parameter_names: Iterable[str] = DEFAULT_RETURN_PARAMETER_NAMES,
    ) -> None:
        self.program = program
        self.catalog = catalog
        self.capabilities = frozenset(capabilities)
        self.return_parameter_names = frozenset(return_parameter_names)
        self._cache: Optional[List[EntryPoint]] = None

    # ---- classes ----------------------------------------------------------

    def _matches_capability(self, name: str) -> bool:
        if name in self.capabilities:
            return True
        if "::" in name:
            return False
        # Unqualified spellings of a qualified capability also match.
        return any(cap.rsplit("::", 1)[-1] == name for cap in self.capabilities)

    def is_service(self, class_name: str) -> bool:
        return any(self._matches_capability(c)
                   for c in self.program.capabilities_of(class_name))

    def marker_interfaces(self) -> List[str]:
        """Declared capability classes that declare no methods at all."""
        return sorted(
            cls.name for cls in self.program.classes.values()
            if cls.is_marker and (self._matches_capability(cls.name)
                                  or any(self._matches_capability(c)
                                         for c in cls.capabilities))
        )

    def service_classes(self) -> List[str]:
        return sorted(name for name, cls in self.program.classes.items()
                      if not cls.is_marker and self.is_service(name))

    # ---- methods ----------------------------------------------------------

    def service_methods(self, class_name: str) -> Dict[str, Procedure]:
        """Non-private methods of a service, own ones shadowing inherited."""
        methods: Dict[str, Procedure] = {}
        for owner in reversed([class_name] + self.program.ancestors(class_name)):
            cls = self.program.classes.get(owner)
            if cls is None:
                continue
            for short_name, proc in cls.methods.items():
                if proc.is_private:
                    methods.pop(short_name, None)
                else:
                    methods[short_name] = proc
        return methods

    def implicit_seeds(self, proc: Procedure) -> Tuple[Seed, ...]:
        seeds = []
        for index, param in enumerate(proc.params):
            if param.name in self.return_parameter_names:
                continue
            seeds.append(Seed(param.name, index, USER_CONTROLLED,
                              Origin.endpoint_parameter(proc.name, param.name,
                                                        index)))
        return tuple(seeds)

    def configured_seeds(self, proc: Procedure) -> Tuple[Seed, ...]:
        """
        Seeds of a configured entry point.

        The receiver and the return-output parameters stay clean even when
        configuration marks them.
        """
        seeds = []
        for source in self.catalog.parameter_sources(proc.name):
            if source.position == RECEIVER:
                logger.warning("%s: the receiver is never user-controlled; "
                               "configured source ignored", proc.name)
                continue
            for index, param in enumerate(proc.params):
                if param.name in self.return_parameter_names:
                    continue
                if source.covers(index):
                    seeds.append(Seed(param.name, index, source.kind,
                                      Origin.configured_parameter(
                                          proc.name, param.name, index)))
        return tuple(seeds)

    # ---- discovery --------------------------------------------------------

    def discover(self) -> List[EntryPoint]:
        """
        All entry points, endpoints first, each procedure at most once.

        The result is computed once and reused for the rest of the run.
        """
        if self._cache is not None:
            return list(self._cache)

        entries: Dict[str, EntryPoint] = {}
        for service in self.service_classes():
            for proc in self.service_methods(service).values():
                if proc.name in entries:
                    continue
                if self.catalog.has_parameter_sources(proc.name):
                    continue
                entries[proc.name] = EntryPoint(proc, self.implicit_seeds(proc),
                                                service=service)
                logger.debug("endpoint %s (service %s)", proc.name, service)

        for proc in self.program.procedures.values():
            if not self.catalog.has_parameter_sources(proc.name):
                continue
            entries[proc.name] = EntryPoint(proc, self.configured_seeds(proc),
                                            configured=True)
            logger.debug("configured entry point %s", proc.name)

        self._cache = list(entries.values())
        logger.info("discovered %d entry point(s) in %d service class(es)",
                    len(self._cache), len(self.service_classes()))
        return list(self._cache)

    def endpoints(self) -> List[EntryPoint]:
        return [e for e in self.discover() if not e.configured]


__all__ = [
    "DEFAULT_SERVICE_CAPABILITIES",
    "DEFAULT_RETURN_PARAMETER_NAMES",
    "Seed",
    "EntryPoint",
    "EndpointDiscoverer",
]
