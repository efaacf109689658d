"""
svctaint.config
===============

Analysis options and the JSON configuration loader.

Configuration file layout::

    {
      "user-controlled-sources": [
        "ns::Service::method",                          // every formal
        {"method": "ns::Service::m", "position": 0},    // one formal
        {"method": "ns::Service::m", "position": "this"},
        {"method": "ns::read_input", "position": "return"}
      ],
      "sources":    [{"method": "ns::read", "kind": "UserControlled",
                      "position": "return"}],
      "sinks":      [{"method": "ns::Db::run", "kind": "SqlQuery",
                      "argument": 0},
                     {"method": "set_option", "kind": "NetworkURL",
                      "argument": 2, "key-argument": 1, "accepted": [7]}],
      "sanitizers": [{"method": "ns::escape", "kind": "ShellCommand"}],
      "service-capabilities": ["ns::MyServiceIf"],
      "analysis": {"max-access-depth": 3, "workers": 4,
                   "unknown-constant-policy": "match"}
    }

``"quandary-endpoints"`` is accepted as an alias of
``"user-controlled-sources"``.

Configuration problems never abort a run: an unreadable file, invalid JSON
or a malformed entry is logged and skipped, and the built-in catalog stays
in force.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, FrozenSet, List, Mapping, Optional, Tuple, Union

from .access_tree import DEFAULT_MAX_ACCESS_DEPTH
from .catalog import (
    RECEIVER,
    RETURN,
    AnyArgument,
    Catalog,
    CatalogEntry,
    ConstantArgument,
    ParameterSource,
    Sanitizer,
    Sink,
    Source,
)
from .const_eval import UnknownConstantPolicy
from .endpoints import DEFAULT_RETURN_PARAMETER_NAMES, DEFAULT_SERVICE_CAPABILITIES
from .taint_lattice import USER_CONTROLLED, kind_named

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AnalysisOptions:
    """Limits and policies of one analysis run."""

    max_access_depth: int = DEFAULT_MAX_ACCESS_DEPTH
    max_fixpoint_iterations: int = 64
    max_summary_depth: int = 32
    workers: int = 1
    unknown_constant_policy: UnknownConstantPolicy = UnknownConstantPolicy.MATCH
    return_parameter_names: Tuple[str, ...] = DEFAULT_RETURN_PARAMETER_NAMES
    service_capabilities: FrozenSet[str] = DEFAULT_SERVICE_CAPABILITIES


# config key -> (option name, converter)
_OPTION_KEYS = {
    "max-access-depth": ("max_access_depth", int),
    "max-fixpoint-iterations": ("max_fixpoint_iterations", int),
    "max-summary-depth": ("max_summary_depth", int),
    "workers": ("workers", int),
    "unknown-constant-policy": ("unknown_constant_policy",
                                UnknownConstantPolicy.from_string),
    "return-parameter-names": ("return_parameter_names",
                               lambda v: tuple(str(x) for x in v)),
}


@dataclass
class Configuration:
    """Everything read from a configuration file."""

    options: AnalysisOptions = field(default_factory=AnalysisOptions)
    entries: List[CatalogEntry] = field(default_factory=list)
    parameter_sources: List[ParameterSource] = field(default_factory=list)
    origin: str = "<defaults>"

    def build_catalog(self) -> Catalog:
        """Built-in entries plus the configured ones."""
        catalog = Catalog.with_builtins()
        for entry in self.entries:
            catalog.add_entry(entry)
        for source in self.parameter_sources:
            catalog.add_parameter_source(source)
        return catalog

    def with_options(self, **changes: Any) -> "Configuration":
        return Configuration(replace(self.options, **changes), list(self.entries),
                             list(self.parameter_sources), self.origin)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class _Skip(Exception):
    """A malformed configuration entry."""


def _warn(origin: str, section: str, index: Optional[int], reason: str) -> None:
    where = section if index is None else f"{section}[{index}]"
    logger.warning("%s: ignoring %s: %s", origin, where, reason)


def _method(item: Mapping[str, Any]) -> str:
    method = item.get("method")
    if not isinstance(method, str) or not method.strip():
        raise _Skip("missing 'method'")
    return method.strip()


def _kind(item: Mapping[str, Any], required: bool = True):
    name = item.get("kind")
    if name is None:
        if required:
            raise _Skip("missing 'kind'")
        return USER_CONTROLLED
    if not isinstance(name, str) or not name.strip():
        raise _Skip(f"invalid kind {name!r}")
    return kind_named(name.strip())


def _position(value: Any, allowed: Tuple[str, ...]) -> Union[int, str]:
    if isinstance(value, bool):
        raise _Skip(f"invalid position {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise _Skip(f"negative position {value}")
        return value
    if isinstance(value, str) and value in allowed:
        return value
    raise _Skip(f"invalid position {value!r}")


def _index(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise _Skip(f"invalid {what} {value!r}")
    return value


def _user_controlled(item: Any, config: Configuration) -> None:
    if isinstance(item, str):
        if not item.strip():
            raise _Skip("empty method name")
        config.parameter_sources.append(ParameterSource(item.strip()))
        return
    if not isinstance(item, Mapping):
        raise _Skip(f"expected a string or an object, got {type(item).__name__}")
    method = _method(item)
    kind = _kind(item, required=False)
    if "position" not in item:
        config.parameter_sources.append(ParameterSource(method, None, kind))
        return
    position = _position(item["position"], (RETURN, RECEIVER))
    if position == RETURN:
        config.entries.append(CatalogEntry(method, Source(kind, RETURN),
                                           configured=True))
    else:
        config.parameter_sources.append(ParameterSource(method, position, kind))


def _source(item: Any, config: Configuration) -> None:
    if not isinstance(item, Mapping):
        raise _Skip("expected an object")
    position = _position(item.get("position", RETURN), (RETURN, RECEIVER))
    config.entries.append(CatalogEntry(
        _method(item), Source(_kind(item, required=False), position),
        configured=True, description=str(item.get("description", ""))))


def _sink(item: Any, config: Configuration) -> None:
    if not isinstance(item, Mapping):
        raise _Skip("expected an object")
    method = _method(item)
    kind = _kind(item)
    raw = item.get("argument", 0)
    if "key-argument" in item:
        accepted = item.get("accepted")
        if not isinstance(accepted, list) or not accepted:
            raise _Skip("'key-argument' requires a non-empty 'accepted' list")
        for value in accepted:
            if isinstance(value, bool) or not isinstance(value, int):
                raise _Skip("'accepted' must list integers")
        matcher = ConstantArgument(
            position=_index(raw, "argument"),
            key_position=_index(item["key-argument"], "key-argument"),
            accepted=frozenset(accepted),
        )
    else:
        positions = raw if isinstance(raw, list) else [raw]
        if not positions:
            raise _Skip("empty 'argument' list")
        matcher = AnyArgument(tuple(_index(p, "argument") for p in positions))
    config.entries.append(CatalogEntry(
        method, Sink(kind, matcher), configured=True,
        description=str(item.get("description", ""))))


def _sanitizer(item: Any, config: Configuration) -> None:
    if not isinstance(item, Mapping):
        raise _Skip("expected an object")
    config.entries.append(CatalogEntry(
        _method(item),
        Sanitizer(_kind(item), _index(item.get("argument", 0), "argument")),
        configured=True, description=str(item.get("description", ""))))


_SECTIONS = (
    ("user-controlled-sources", _user_controlled),
    ("quandary-endpoints", _user_controlled),
    ("sources", _source),
    ("sinks", _sink),
    ("sanitizers", _sanitizer),
)


def parse_config(data: Any, origin: str = "<config>") -> Configuration:
    """
    Build a :class:`Configuration` from decoded JSON.

    Malformed sections and entries are logged and skipped.
    """
    config = Configuration(origin=origin)
    if not isinstance(data, Mapping):
        _warn(origin, "document", None, "top level must be an object")
        return config

    for section, handler in _SECTIONS:
        items = data.get(section)
        if items is None:
            continue
        if not isinstance(items, list):
            _warn(origin, section, None, "expected a list")
            continue
        for index, item in enumerate(items):
            try:
                handler(item, config)
            except _Skip as exc:
                _warn(origin, section, index, str(exc))

    options = config.options
    caps = data.get("service-capabilities")
    if caps is not None:
        if isinstance(caps, list) and all(isinstance(c, str) for c in caps):
            options = replace(options, service_capabilities=
                              options.service_capabilities | frozenset(caps))
        else:
            _warn(origin, "service-capabilities", None,
                  "expected a list of strings")

    analysis = data.get("analysis")
    if analysis is not None:
        if not isinstance(analysis, Mapping):
            _warn(origin, "analysis", None, "expected an object")
        else:
            for key, value in analysis.items():
                if key not in _OPTION_KEYS:
                    _warn(origin, "analysis", None, f"unknown option '{key}'")
                    continue
                name, convert = _OPTION_KEYS[key]
                try:
                    converted = convert(value)
                except (TypeError, ValueError) as exc:
                    _warn(origin, f"analysis.{key}", None, str(exc))
                    continue
                if isinstance(converted, int) and converted < 1:
                    _warn(origin, f"analysis.{key}", None,
                          f"must be positive, got {converted}")
                    continue
                options = replace(options, **{name: converted})

    config.options = options
    logger.info("%s: %d catalog entr(ies), %d parameter source(s)",
                origin, len(config.entries), len(config.parameter_sources))
    return config


def load_config(path: Union[str, Path, None]) -> Configuration:
    """
    Read a JSON configuration file.

    Returns the default configuration (built-ins only) when *path* is
    ``None``, unreadable, or not valid JSON.
    """
    if path is None:
        return Configuration()
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("cannot read configuration %s: %s", path, exc)
        return Configuration(origin=str(path))
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("invalid JSON in configuration %s: %s", path, exc)
        return Configuration(origin=str(path))
    return parse_config(data, origin=str(path))


__all__ = [
    "AnalysisOptions",
    "Configuration",
    "parse_config",
    "load_config",
]
