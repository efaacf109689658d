#!/usr/bin/env python3
"""svctaint/cli.py — command-line entry point.

Usage examples
--------------
    # Analyse a program listing with the built-in catalog
    svctaint analyze service.listing

    # Add configured sources/sinks and emit JSON
    svctaint analyze service.listing --config taint.json --format json -o out.json

    # Analyse entry points on four worker threads
    svctaint analyze service.listing --workers 4

    # List discovered service endpoints and configured entry points
    svctaint endpoints service.listing --config taint.json

    # Print the call graph (or Graphviz DOT)
    svctaint callgraph service.listing --dot

Exit codes
----------
    0   Success, no findings.
    1   One or more findings were reported.
    2   Infrastructure failure (missing file, malformed listing, etc.).

The module doubles as ``python -m svctaint`` via the companion
``svctaint/__main__.py`` which simply calls :func:`main`.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from pathlib import Path
from typing import Optional, Sequence, TextIO

from . import __version__
from .analysis import AnalysisRun
from .callgraph import build_callgraph
from .config import Configuration, load_config
from .errors import SvcTaintError
from .findings import ReportFormat, format_findings
from .listing import load_listing
from .program import Program

_log = logging.getLogger("svctaint")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_FINDINGS: int = 1
EXIT_INFRA: int = 2


# ===========================================================================
# Helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the root ``svctaint`` logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    root = logging.getLogger("svctaint")
    root.setLevel(level)
    if not any(getattr(h, "_svctaint", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        handler._svctaint = True
        root.addHandler(handler)


def _resolve_path(raw: str, label: str = "file") -> Path:
    """Resolve *raw* to an absolute ``Path``, raising on missing files."""
    p = Path(raw).expanduser().resolve()
    if not p.exists():
        _log.error("%s not found: %s", label, p)
        raise SystemExit(EXIT_INFRA)
    return p


def _open_output(dest: Optional[str]) -> TextIO:
    """Return a writable text stream.

    *dest* ``None`` or ``"-"`` → ``sys.stdout``; otherwise open the path
    for writing (creating parent directories as needed).
    """
    if dest is None or dest == "-":
        return sys.stdout
    p = Path(dest).expanduser().resolve()
    p.parent.mkdir(parents=True, exist_ok=True)
    return open(p, "w", encoding="utf-8")


def _load_inputs(args: argparse.Namespace):
    """Read the listing and (optionally) the configuration."""
    listing_path = _resolve_path(args.listing, "listing")
    config_path = getattr(args, "config", None)
    if config_path is not None:
        config_path = _resolve_path(config_path, "configuration")
    config: Configuration = load_config(config_path)

    _log.info("Parsing listing: %s", listing_path)
    program: Program = load_listing(listing_path)
    return program, config


# ===========================================================================
# Sub-commands
# ===========================================================================

def cmd_analyze(args: argparse.Namespace) -> int:
    """Run the taint analysis and report findings.

    Workflow:
        1. Parse the listing into a program model.
        2. Load the configuration (built-ins stay in force on problems).
        3. Analyse every entry point, then every remaining procedure.
        4. Emit the de-duplicated findings and return an exit code.
    """
    program, config = _load_inputs(args)
    if args.workers is not None:
        config = config.with_options(workers=max(1, args.workers))

    with AnalysisRun(program, config) as run:
        result = run.run()
    _log.info("Analysis completed in %.1f ms", result.analysis_time_ms)

    out = _open_output(args.output)
    try:
        out.write(format_findings(result.findings, ReportFormat(args.format)))
        if args.format == "json":
            out.write("\n")
    finally:
        if out is not sys.stdout:
            out.close()

    return EXIT_FINDINGS if result.has_findings() else EXIT_OK


def cmd_endpoints(args: argparse.Namespace) -> int:
    """List the entry points the analysis would start from."""
    program, config = _load_inputs(args)
    run = AnalysisRun(program, config)
    entries = run.entry_points()

    out = _open_output(args.output)
    try:
        if args.json:
            data = [
                {
                    "procedure": e.name,
                    "service": e.service,
                    "configured": e.configured,
                    "seeds": [s.parameter for s in e.seeds],
                }
                for e in entries
            ]
            out.write(json.dumps(data, indent=2) + "\n")
        else:
            for e in entries:
                tag = "configured" if e.configured else f"service {e.service}"
                seeds = ", ".join(s.parameter for s in e.seeds) or "-"
                out.write(f"{e.name}  [{tag}]  tainted: {seeds}\n")
            out.write(f"\n--- {len(entries)} entry point(s) ---\n")
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_OK


def cmd_callgraph(args: argparse.Namespace) -> int:
    """Print the call graph of the listing."""
    program, _ = _load_inputs(args)
    graph = build_callgraph(program)

    out = _open_output(args.output)
    try:
        if args.dot:
            out.write(graph.to_dot(title=program.name) + "\n")
        else:
            for node in graph.topological_order():
                callees = ", ".join(sorted(c.name for c in node.callees)) or "-"
                out.write(f"{node.name} -> {callees}\n")
            stats = graph.statistics()
            out.write(f"\n--- {stats['total_nodes']} node(s), "
                      f"{stats['total_edges']} edge(s) ---\n")
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_OK


# ===========================================================================
# Argument parser
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct the full CLI argument parser with subcommands."""

    parser = argparse.ArgumentParser(
        prog="svctaint",
        description=(
            "svctaint — interprocedural taint analysis for service code.\n\n"
            "Flags untrusted data (service endpoint parameters, configured\n"
            "sources) reaching shell, SQL, filesystem and URL sinks."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              svctaint analyze service.listing --config taint.json
              svctaint endpoints service.listing
              svctaint callgraph service.listing --dot
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    def _add_input_args(p: argparse.ArgumentParser, config: bool = True) -> None:
        p.add_argument(
            "listing",
            metavar="LISTING",
            help="Program listing to analyse.",
        )
        if config:
            p.add_argument(
                "-c", "--config",
                metavar="FILE",
                default=None,
                help="JSON configuration (sources, sinks, sanitizers, limits).",
            )
        p.add_argument(
            "-o", "--output",
            default=None,
            metavar="FILE",
            help='Output file ("-" or omit for stdout).',
        )

    # --- analyze -----------------------------------------------------------
    p_analyze = subparsers.add_parser(
        "analyze",
        aliases=["analyse"],
        help="Run the taint analysis on a listing.",
    )
    _add_input_args(p_analyze)
    p_analyze.add_argument(
        "-f", "--format",
        choices=[f.value for f in ReportFormat],
        default=ReportFormat.TEXT.value,
        help="Output format (default: text).",
    )
    p_analyze.add_argument(
        "-j", "--workers",
        type=int,
        default=None,
        metavar="N",
        help="Analyse entry points on N threads (default: from config, 1).",
    )
    p_analyze.set_defaults(func=cmd_analyze)

    # --- endpoints ---------------------------------------------------------
    p_endpoints = subparsers.add_parser(
        "endpoints",
        help="List service endpoints and configured entry points.",
    )
    _add_input_args(p_endpoints)
    p_endpoints.add_argument(
        "--json",
        action="store_true",
        help="Emit JSON instead of text.",
    )
    p_endpoints.set_defaults(func=cmd_endpoints)

    # --- callgraph ---------------------------------------------------------
    p_callgraph = subparsers.add_parser(
        "callgraph",
        help="Print the call graph of a listing.",
    )
    _add_input_args(p_callgraph, config=False)
    p_callgraph.add_argument(
        "--dot",
        action="store_true",
        help="Emit Graphviz DOT.",
    )
    p_callgraph.set_defaults(func=cmd_callgraph)

    return parser


# ===========================================================================
# main
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the svctaint CLI.

    Parameters
    ----------
    argv:
        Command-line arguments.  ``None`` → ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (see module docstring for semantics).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else EXIT_INFRA
    except SvcTaintError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    except OSError as exc:
        _log.error("I/O error: %s", exc)
        return EXIT_INFRA
    except Exception as exc:
        _log.error("Unhandled exception: %s", exc, exc_info=True)
        return EXIT_INFRA


if __name__ == "__main__":
    raise SystemExit(main())
