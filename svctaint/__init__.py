"""
svctaint — Interprocedural Taint Analysis for Service Code
==========================================================

This package flags injection-style vulnerabilities: untrusted data (the
formal parameters of methods on network-facing services, configured
user-controlled parameters, and the results of source calls) reaching a
process, SQL, filesystem or URL sink without passing through a sanitizer of
the matching kind.

Core modules
------------
taint_lattice
    Taint kinds, origins, traces and the set-of-traces lattice.
access_tree
    Bounded access paths and the field-sensitive taint state.
catalog
    Sources, sinks and sanitizers, configured and built-in.
endpoints
    Service endpoint and configured entry-point discovery.
const_eval
    Folding of integer key arguments for exact-value sinks.
propagator
    Forward worklist propagation over one procedure.
summaries
    Footprint summaries and the run-wide summary cache.
analysis
    The per-run context tying everything together.

Collaborators
-------------
program, listing, callgraph, config, findings, errors, cli

Quick start
-----------
>>> from svctaint import parse_listing, analyze
>>> program = parse_listing('''
...     extern function getenv(name: char*) -> char*;
...     extern function system(cmd: char*) -> int;
...     function run() -> void {
...         cmd = getenv("CMD");
...         system(cmd);
...     }
... ''')
>>> [f.issue_type for f in analyze(program).findings]
['SHELL_INJECTION']

Package layout
--------------
::

    svctaint/
    ├── __init__.py            ← this file
    ├── taint_lattice.py
    ├── access_tree.py
    ├── program.py
    ├── listing.py
    ├── callgraph.py
    ├── catalog.py
    ├── const_eval.py
    ├── endpoints.py
    ├── propagator.py
    ├── summaries.py
    ├── findings.py
    ├── config.py
    ├── analysis.py
    ├── errors.py
    └── cli.py
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import TYPE_CHECKING, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.4.0"
__license__ = "MIT"
__all__: List[str] = []          # populated incrementally below

_log = logging.getLogger(__name__)
_log.addHandler(logging.NullHandler())

# ---------------------------------------------------------------------------
# Internal registry: (module_name, list_of_names_to_import)
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "SvcTaintError",
        "MalformedProgramError",
        "ListingSyntaxError",
    ],
    "taint_lattice": [
        "TaintKind",
        "Origin",
        "OriginKind",
        "TaintTrace",
        "TaintValue",
        "CLEAN",
        "kind_named",
        "SHELL_COMMAND",
        "SQL_QUERY",
        "FILESYSTEM_PATH",
        "NETWORK_URL",
        "USER_CONTROLLED",
    ],
    "access_tree": [
        "Base",
        "AccessPath",
        "AccessTree",
        "TaintState",
    ],
    "program": [
        "Program",
        "Procedure",
        "Parameter",
        "ClassDecl",
        "StructDecl",
        "BasicBlock",
        "SourceLocation",
    ],
    "listing": [
        "parse_listing",
        "load_listing",
    ],
    "catalog": [
        "Catalog",
        "CatalogEntry",
        "Source",
        "Sink",
        "Sanitizer",
        "AnyArgument",
        "ConstantArgument",
        "ParameterSource",
    ],
    "const_eval": [
        "ConstantEvaluator",
        "UnknownConstantPolicy",
    ],
    "endpoints": [
        "EndpointDiscoverer",
        "EntryPoint",
    ],
    "findings": [
        "Finding",
        "FindingCollector",
        "IssueType",
        "ReportFormat",
        "format_findings",
    ],
    "summaries": [
        "ProcedureSummary",
        "SummaryCache",
    ],
    "propagator": [
        "Propagator",
    ],
    "config": [
        "AnalysisOptions",
        "Configuration",
        "load_config",
        "parse_config",
    ],
    "callgraph": [
        "CallGraph",
        "build_callgraph",
    ],
    "analysis": [
        "AnalysisRun",
        "AnalysisResult",
        "analyze",
    ],
}

# ---------------------------------------------------------------------------
# Import helper
# ---------------------------------------------------------------------------

def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace.

    Parameters
    ----------
    module_rel_name:
        Module name relative to this package (e.g. ``"catalog"``).
    names:
        Public symbols to re-export.
    """
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"svctaint: required submodule '{module_rel_name}' "
            f"failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        if not hasattr(mod, name):
            raise AttributeError(
                f"svctaint.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, getattr(mod, name))
        __all__.append(name)

    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names


def list_submodules() -> List[str]:
    """Return the names of the re-exporting submodules."""
    return sorted(_CORE_MODULES)


__all__ += ["list_submodules", "__version__"]

# ---------------------------------------------------------------------------
# Static imports for type checkers; the lazy loader above serves runtime
# ---------------------------------------------------------------------------

if TYPE_CHECKING:
    from .errors import (
        SvcTaintError as SvcTaintError,
        MalformedProgramError as MalformedProgramError,
        ListingSyntaxError as ListingSyntaxError,
    )
    from .taint_lattice import (
        TaintKind as TaintKind,
        Origin as Origin,
        OriginKind as OriginKind,
        TaintTrace as TaintTrace,
        TaintValue as TaintValue,
        CLEAN as CLEAN,
        kind_named as kind_named,
        SHELL_COMMAND as SHELL_COMMAND,
        SQL_QUERY as SQL_QUERY,
        FILESYSTEM_PATH as FILESYSTEM_PATH,
        NETWORK_URL as NETWORK_URL,
        USER_CONTROLLED as USER_CONTROLLED,
    )
    from .access_tree import (
        Base as Base,
        AccessPath as AccessPath,
        AccessTree as AccessTree,
        TaintState as TaintState,
    )
    from .program import (
        Program as Program,
        Procedure as Procedure,
        Parameter as Parameter,
        ClassDecl as ClassDecl,
        StructDecl as StructDecl,
        BasicBlock as BasicBlock,
        SourceLocation as SourceLocation,
    )
    from .listing import (
        parse_listing as parse_listing,
        load_listing as load_listing,
    )
    from .catalog import (
        Catalog as Catalog,
        CatalogEntry as CatalogEntry,
        Source as Source,
        Sink as Sink,
        Sanitizer as Sanitizer,
        AnyArgument as AnyArgument,
        ConstantArgument as ConstantArgument,
        ParameterSource as ParameterSource,
    )
    from .const_eval import (
        ConstantEvaluator as ConstantEvaluator,
        UnknownConstantPolicy as UnknownConstantPolicy,
    )
    from .endpoints import (
        EndpointDiscoverer as EndpointDiscoverer,
        EntryPoint as EntryPoint,
    )
    from .findings import (
        Finding as Finding,
        FindingCollector as FindingCollector,
        IssueType as IssueType,
        ReportFormat as ReportFormat,
        format_findings as format_findings,
    )
    from .summaries import (
        ProcedureSummary as ProcedureSummary,
        SummaryCache as SummaryCache,
    )
    from .propagator import Propagator as Propagator
    from .config import (
        AnalysisOptions as AnalysisOptions,
        Configuration as Configuration,
        load_config as load_config,
        parse_config as parse_config,
    )
    from .callgraph import (
        CallGraph as CallGraph,
        build_callgraph as build_callgraph,
    )
    from .analysis import (
        AnalysisRun as AnalysisRun,
        AnalysisResult as AnalysisResult,
        analyze as analyze,
    )
