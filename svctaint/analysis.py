#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
svctaint/analysis.py
════════════════════

The per-run analysis context.

An :class:`AnalysisRun` owns everything that lives for exactly one run: the
catalog built from configuration, the constant evaluator, the endpoint
discoverer, the summary cache and the finding collector.  Nothing is kept
in module-level state, so independent runs never share summaries.

    ┌─────────────┐  catalog   ┌──────────────────┐  entry points
    │ Configuration│──────────▶│ EndpointDiscoverer│──────────────┐
    └─────────────┘            └──────────────────┘               ▼
                                                           ┌────────────┐
         ┌───────────────┐   summary_for(callee)           │ Propagator │
         │ SummaryCache  │◀────────────────────────────────│ (per entry)│
         │ (lock, events)│────────────────────────────────▶└────────────┘
         └───────────────┘   ProcedureSummary                    │
                                                                  ▼
                                                        ┌──────────────────┐
                                                        │ FindingCollector │
                                                        └──────────────────┘

Usage:
    program = parse_listing(text)
    with AnalysisRun(program, load_config("taint.json")) as run:
        result = run.run()
    for finding in result.findings:
        print(finding.to_gcc_format())

License: MIT
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .catalog import Catalog
from .config import AnalysisOptions, Configuration
from .const_eval import ConstantEvaluator
from .endpoints import EndpointDiscoverer, EntryPoint
from .findings import Finding, FindingCollector, Reporter
from .program import Procedure, Program
from .propagator import Propagator, entry_state
from .summaries import ProcedureSummary, SummaryCache, footprint_state

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — RESULTS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AnalysisResult:
    """
    Results of one analysis run.

    Attributes:
        findings: De-duplicated findings, sorted by location
        entry_points: The entry points that were analysed
        statistics: Counters describing the run
        analysis_time_ms: Wall-clock time of the run in milliseconds
    """
    findings: List[Finding] = field(default_factory=list)
    entry_points: List[EntryPoint] = field(default_factory=list)
    statistics: Dict[str, Any] = field(default_factory=dict)
    analysis_time_ms: float = 0.0

    def has_findings(self) -> bool:
        return len(self.findings) > 0

    def get_findings_by_issue(self, issue_type: str) -> List[Finding]:
        return [f for f in self.findings if f.issue_type == issue_type]

    def get_findings_in(self, procedure: str) -> List[Finding]:
        """Findings whose sink call site lies in *procedure*."""
        return [f for f in self.findings if f.procedure == procedure]

    def issue_types(self, procedure: Optional[str] = None) -> List[str]:
        return sorted(f.issue_type for f in self.findings
                      if procedure is None or f.procedure == procedure)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — THE RUN CONTEXT
# ═══════════════════════════════════════════════════════════════════════════

class AnalysisRun:
    """
    One analysis of one program.

    Args:
        program: The program to analyse; it is validated on construction
        config: Configuration (defaults to the built-in catalog only)
        reporter: Optional extra receiver of the de-duplicated findings

    Raises:
        MalformedProgramError: If a procedure body violates the block
            structure contract
    """

    def __init__(self, program: Program,
                 config: Optional[Configuration] = None,
                 reporter: Optional[Reporter] = None) -> None:
        self.program = program.validate()
        self.config = config or Configuration()
        self.options: AnalysisOptions = self.config.options
        self.reporter = reporter

        self.catalog: Catalog = self.config.build_catalog()
        self.evaluator = ConstantEvaluator(
            program, self.options.unknown_constant_policy)
        self.discoverer = EndpointDiscoverer(
            program, self.catalog,
            capabilities=self.options.service_capabilities,
            return_parameter_names=self.options.return_parameter_names)
        self.summaries = SummaryCache(self._build_summary,
                                      self.options.max_summary_depth)
        self.collector = FindingCollector()
        self._unconverged: List[str] = []

    # Limits read by the propagator.

    @property
    def max_access_depth(self) -> int:
        return self.options.max_access_depth

    @property
    def max_fixpoint_iterations(self) -> int:
        return self.options.max_fixpoint_iterations

    # ─────────────────────────────────────────────────────────────────
    #  Summaries
    # ─────────────────────────────────────────────────────────────────

    def summary_for(self, procedure: Procedure) -> Optional[ProcedureSummary]:
        return self.summaries.summary_for(procedure)

    def _build_summary(self, procedure: Procedure) -> ProcedureSummary:
        initial = footprint_state(self.program, procedure,
                                  self.max_access_depth)
        result = Propagator(self, procedure, initial).run()
        if not result.converged:
            self._unconverged.append(procedure.name)
        return ProcedureSummary.from_exit_state(
            procedure, result.exit_state, result.obligations,
            result.findings, result.converged)

    # ─────────────────────────────────────────────────────────────────
    #  Entry points
    # ─────────────────────────────────────────────────────────────────

    def entry_points(self) -> List[EntryPoint]:
        return self.discoverer.discover()

    def analyze_entry_point(self, entry: EntryPoint) -> List[Finding]:
        """
        Propagate from one entry point with its seeded formals.

        Footprints left over at the entry point's own sinks belong to its
        callers, which are not analysed from here, so they are dropped.
        """
        proc = entry.procedure
        if not proc.has_body:
            logger.debug("entry point %s has no body; skipped", proc.name)
            return []
        logger.debug("analysing entry point %s", proc.name)
        initial = entry_state(self.program, proc, entry.seeds,
                              self.max_access_depth)
        result = Propagator(self, proc, initial, entry_point=proc.name).run()
        if not result.converged:
            self._unconverged.append(proc.name)
        self.collector.report_all(result.findings)
        return result.findings

    def _analyze_all(self, entries: List[EntryPoint]) -> None:
        workers = max(1, self.options.workers)
        if workers == 1 or len(entries) < 2:
            for entry in entries:
                self.analyze_entry_point(entry)
            return
        logger.info("analysing %d entry point(s) on %d worker(s)",
                    len(entries), workers)
        with ThreadPoolExecutor(max_workers=workers,
                                thread_name_prefix="svctaint") as pool:
            futures = [pool.submit(self.analyze_entry_point, e)
                       for e in entries]
            for future in futures:
                future.result()

    # ─────────────────────────────────────────────────────────────────
    #  Whole run
    # ─────────────────────────────────────────────────────────────────

    def run(self) -> AnalysisResult:
        """
        Analyse every entry point, then every remaining procedure body.

        Procedures that are not entry points are summarized too, so the
        findings caused by their own sources are reported even when no
        entry point reaches them.
        """
        start_time = time.time()
        entries = self.entry_points()
        self._analyze_all(entries)

        for proc in self.program.bodied_procedures():
            summary = self.summary_for(proc)
            if summary is not None:
                self.collector.report_all(summary.findings)

        findings = self.collector.findings
        if self.reporter is not None:
            for finding in findings:
                self.reporter.report(finding)

        elapsed_ms = (time.time() - start_time) * 1000
        stats = {
            "entry_points": len(entries),
            "procedures": sum(1 for _ in self.program.bodied_procedures()),
            "summaries": len(self.summaries),
            "summary_builds": sum(self.summaries.build_counts.values()),
            "provisional_summaries": self.summaries.provisional_count,
            "unconverged": sorted(set(self._unconverged)),
            "findings": len(findings),
        }
        logger.info("analysis finished: %d finding(s) from %d entry point(s) "
                    "in %.1f ms", len(findings), len(entries), elapsed_ms)
        return AnalysisResult(findings, entries, stats, elapsed_ms)

    def close(self) -> None:
        """Drop the run's summaries."""
        self.summaries.clear()

    def __enter__(self) -> "AnalysisRun":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def analyze(program: Program,
            config: Optional[Configuration] = None) -> AnalysisResult:
    """Run a complete analysis of *program* and return its results."""
    with AnalysisRun(program, config) as run:
        return run.run()


__all__ = [
    "AnalysisResult",
    "AnalysisRun",
    "analyze",
]
