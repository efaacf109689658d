#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
svctaint/findings.py
════════════════════

Findings, the issue table, and the reporter side of the analysis.

A *finding* says that data of some origin reaches a sink call site.  Its
issue type is decided per trace by the issue table:

    ┌─────────────────────────────┬──────────────────┬───────────┬────────────────────────────┐
    │ origin                      │ sink kind        │ sanitized │ issue                      │
    ├─────────────────────────────┼──────────────────┼───────────┼────────────────────────────┤
    │ endpoint parameter          │ Shell / Sql      │ no        │ REMOTE_CODE_EXECUTION_RISK │
    │ configured / source call    │ ShellCommand     │ no        │ SHELL_INJECTION            │
    │ configured / source call    │ SqlQuery         │ no        │ SQL_INJECTION              │
    │ any                         │ SqlQuery         │ yes       │ USER_CONTROLLED_SQL_RISK   │
    │ any                         │ FileSystemPath   │ no        │ UNTRUSTED_FILE_RISK        │
    │ any                         │ NetworkURL       │ no        │ UNTRUSTED_URL_RISK         │
    │ any                         │ custom kind      │ no        │ TAINTED_<KIND>             │
    │ any                         │ other            │ yes       │ (none)                     │
    └─────────────────────────────┴──────────────────┴───────────┴────────────────────────────┘

The :class:`FindingCollector` reporter keeps one finding per
``(sink call site, issue type)`` and merges the origins of repeated
reports into it.
"""

from __future__ import annotations

import json
import re
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Protocol,
    Tuple,
)

from .program import SourceLocation
from .taint_lattice import (
    FILESYSTEM_PATH,
    NETWORK_URL,
    SHELL_COMMAND,
    SQL_QUERY,
    Origin,
    OriginKind,
    TaintKind,
    TaintTrace,
)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — ISSUE TYPES
# ═══════════════════════════════════════════════════════════════════════════

class IssueType(str, Enum):
    """The fixed issue types; custom kinds report ``TAINTED_<KIND>``."""
    REMOTE_CODE_EXECUTION_RISK = "REMOTE_CODE_EXECUTION_RISK"
    SHELL_INJECTION = "SHELL_INJECTION"
    SQL_INJECTION = "SQL_INJECTION"
    USER_CONTROLLED_SQL_RISK = "USER_CONTROLLED_SQL_RISK"
    UNTRUSTED_FILE_RISK = "UNTRUSTED_FILE_RISK"
    UNTRUSTED_URL_RISK = "UNTRUSTED_URL_RISK"


_SEVERITY = {
    IssueType.REMOTE_CODE_EXECUTION_RISK.value: "error",
    IssueType.SHELL_INJECTION.value: "error",
    IssueType.SQL_INJECTION.value: "error",
}

_CWE = {
    IssueType.REMOTE_CODE_EXECUTION_RISK.value: 94,
    IssueType.SHELL_INJECTION.value: 78,
    IssueType.SQL_INJECTION.value: 89,
    IssueType.USER_CONTROLLED_SQL_RISK.value: 89,
    IssueType.UNTRUSTED_FILE_RISK.value: 73,
    IssueType.UNTRUSTED_URL_RISK.value: 918,
}


def custom_issue_type(kind: TaintKind) -> str:
    """``XssPayload`` → ``TAINTED_XSS_PAYLOAD``."""
    words = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", kind.name)
    return "TAINTED_" + re.sub(r"[^A-Za-z0-9]+", "_", words).upper().strip("_")


def classify(trace: TaintTrace, sink_kind: TaintKind) -> Optional[str]:
    """
    Issue type for a concrete trace reaching a sink, or ``None``.

    Args:
        trace: A trace whose origin is not a footprint
        sink_kind: The kind the sink accepts

    Returns:
        The issue type name, or ``None`` when the trace is irrelevant to the
        sink or sanitized for it (outside the SQL case)
    """
    if not trace.relevant_to(sink_kind):
        return None
    if trace.sanitized_for(sink_kind):
        if sink_kind == SQL_QUERY:
            return IssueType.USER_CONTROLLED_SQL_RISK.value
        return None
    if sink_kind in (SHELL_COMMAND, SQL_QUERY):
        if trace.origin.kind is OriginKind.ENDPOINT_PARAMETER:
            return IssueType.REMOTE_CODE_EXECUTION_RISK.value
        if sink_kind == SHELL_COMMAND:
            return IssueType.SHELL_INJECTION.value
        return IssueType.SQL_INJECTION.value
    if sink_kind == FILESYSTEM_PATH:
        return IssueType.UNTRUSTED_FILE_RISK.value
    if sink_kind == NETWORK_URL:
        return IssueType.UNTRUSTED_URL_RISK.value
    return custom_issue_type(sink_kind)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — FINDINGS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Finding:
    """
    A tainted value reaching a sink.

    Attributes:
        issue_type: Issue type name (see :class:`IssueType`)
        sink_kind: The kind the sink accepts
        sink: Name of the called sink
        location: Call site of the sink
        procedure: Procedure containing the sink call
        origins: Where the tainted data entered the program
        sanitized: Whether a sanitizer for the sink kind was applied
        entry_point: Entry point whose analysis discovered the flow
    """
    issue_type: str
    sink_kind: TaintKind
    sink: str
    location: SourceLocation
    procedure: str
    origins: FrozenSet[Origin] = field(default_factory=frozenset)
    sanitized: bool = False
    entry_point: str = ""

    @property
    def key(self) -> Tuple[str, SourceLocation, str]:
        """Identity used for de-duplication: the call site plus issue."""
        return (self.procedure, self.location, self.issue_type)

    @property
    def severity(self) -> str:
        return _SEVERITY.get(self.issue_type, "warning")

    @property
    def cwe(self) -> int:
        return _CWE.get(self.issue_type, 0)

    @property
    def message(self) -> str:
        sources = "; ".join(sorted(o.describe() for o in self.origins))
        text = f"{self.sink_kind.name} data flows into {self.sink}()"
        if sources:
            text += f" from {sources}"
        if self.sanitized:
            text += f" (sanitized for {self.sink_kind.name})"
        return text

    def merge(self, other: 'Finding') -> 'Finding':
        """Combine the origins of two reports of the same call site."""
        return Finding(self.issue_type, self.sink_kind, self.sink,
                       self.location, self.procedure,
                       self.origins | other.origins,
                       self.sanitized and other.sanitized,
                       self.entry_point or other.entry_point)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_type": self.issue_type,
            "severity": self.severity,
            "cwe": self.cwe,
            "sink": self.sink,
            "sink_kind": self.sink_kind.name,
            "procedure": self.procedure,
            "entry_point": self.entry_point,
            "file": self.location.file,
            "line": self.location.line,
            "column": self.location.column,
            "sanitized": self.sanitized,
            "origins": sorted(o.describe() for o in self.origins),
            "message": self.message,
        }

    def to_gcc_format(self) -> str:
        """GCC-style diagnostic string: file:line:col: severity: message."""
        return f"{self.location}: {self.severity}: {self.message} [{self.issue_type}]"

    def __repr__(self) -> str:
        return f"Finding({self.issue_type} at {self.location} in {self.procedure})"


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — REPORTERS
# ═══════════════════════════════════════════════════════════════════════════

class Reporter(Protocol):
    """Receiver of findings."""

    def report(self, finding: Finding) -> None:
        ...


class FindingCollector:
    """
    Thread-safe reporter keeping one finding per call site and issue type.

    Later reports of an already known ``(call site, issue type)`` pair only
    add their origins to the existing finding.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._findings: Dict[Tuple[str, SourceLocation, str], Finding] = {}

    def report(self, finding: Finding) -> None:
        with self._lock:
            existing = self._findings.get(finding.key)
            if existing is None:
                self._findings[finding.key] = finding
            else:
                self._findings[finding.key] = existing.merge(finding)

    def report_all(self, findings: Iterable[Finding]) -> None:
        for f in findings:
            self.report(f)

    @property
    def findings(self) -> List[Finding]:
        """Findings sorted by location, then issue type."""
        with self._lock:
            items = list(self._findings.values())
        return sorted(items, key=lambda f: (f.location.file, f.location.line,
                                            f.location.column, f.procedure,
                                            f.issue_type))

    def by_procedure(self) -> Dict[str, List[Finding]]:
        grouped: Dict[str, List[Finding]] = defaultdict(list)
        for f in self.findings:
            grouped[f.procedure].append(f)
        return dict(grouped)

    def issue_types(self, procedure: Optional[str] = None) -> List[str]:
        return sorted(f.issue_type for f in self.findings
                      if procedure is None or f.procedure == procedure)

    def __len__(self) -> int:
        with self._lock:
            return len(self._findings)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 4 — OUTPUT FORMATS
# ═══════════════════════════════════════════════════════════════════════════

class ReportFormat(Enum):
    """Output format for reports."""
    TEXT = "text"
    JSON = "json"
    GCC = "gcc"


def format_findings_text(findings: List[Finding]) -> str:
    """
    Format findings as human-readable text.

    Args:
        findings: Findings to format

    Returns:
        Formatted text report
    """
    if not findings:
        return "No taint issues detected.\n"

    lines = [f"svctaint: {len(findings)} issue(s) detected", ""]
    by_issue: Dict[str, List[Finding]] = defaultdict(list)
    for f in findings:
        by_issue[f.issue_type].append(f)

    for issue in sorted(by_issue):
        group = by_issue[issue]
        lines.append(f"═══ {issue} ({len(group)}) ═══")
        for i, f in enumerate(group, 1):
            lines.append(f"[{i}] {f.location}  {f.procedure}")
            lines.append(f"    Sink: {f.sink}() [{f.sink_kind.name}]")
            for origin in sorted(o.describe() for o in f.origins):
                lines.append(f"    Source: {origin}")
            if f.sanitized:
                lines.append(f"    Sanitized for {f.sink_kind.name}")
        lines.append("")
    return "\n".join(lines)


def format_findings_json(findings: List[Finding]) -> str:
    data = {
        "version": "1.0",
        "total_findings": len(findings),
        "findings": [f.to_dict() for f in findings],
    }
    return json.dumps(data, indent=2)


def format_findings_gcc(findings: List[Finding]) -> str:
    return "".join(f.to_gcc_format() + "\n" for f in findings)


def format_findings(findings: List[Finding], fmt: ReportFormat) -> str:
    if fmt is ReportFormat.JSON:
        return format_findings_json(findings)
    if fmt is ReportFormat.GCC:
        return format_findings_gcc(findings)
    return format_findings_text(findings)


__all__ = [
    "IssueType",
    "custom_issue_type",
    "classify",
    "Finding",
    "Reporter",
    "FindingCollector",
    "ReportFormat",
    "format_findings_text",
    "format_findings_json",
    "format_findings_gcc",
    "format_findings",
]
