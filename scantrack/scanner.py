"""Scanner invocation and output parsing.

The scanner is an external executable. It is called with an input artifact
and an optional progress file, appends NDJSON progress lines while it runs
and prints its result on stdout: JSON with a ``findings`` list and, usually,
a ``summary`` of severity counts. Older builds print plain text, from which
CVE identifiers are scraped instead.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import ScannerConfig
from .models import Job

CVE_RE = re.compile(r"CVE-\d{4}-\d{4,7}", re.IGNORECASE)

SEVERITIES = ("critical", "high", "medium", "low")


@dataclass
class Finding:
    id: str
    description: str | None = None
    severity: str | None = None
    source: str | None = None


@dataclass
class ScanReport:
    findings: list[Finding] = field(default_factory=list)
    summary: dict[str, Any] | None = None

    def compute_summary(self) -> dict[str, Any]:
        """Scanner-provided summary, or counts derived from the findings."""
        if self.summary is not None:
            return self.summary

        def count(sev: str) -> int:
            return sum(1 for f in self.findings if sev in (f.severity or "").lower())

        summary: dict[str, Any] = {"total_findings": len(self.findings)}
        for sev in SEVERITIES:
            summary[sev] = count(sev)
        return summary


def build_argv(
    config: ScannerConfig,
    input_path: str,
    job: Job,
    progress_file: Path | None = None,
) -> list[str]:
    """Full command line for one scan."""
    progress_args: list[str] = []
    if config.use_progress and progress_file is not None:
        progress_args = ["--progress", "--progress-file", str(progress_file)]

    scan_args = ["scan", "--file", input_path, "--format", job.format, "--mode", job.mode]
    if job.refs:
        scan_args.append("--refs")

    if config.docker_image:
        uploads = Path(config.uploads_dir).resolve()
        inside = _to_container_path(input_path, uploads)
        scan_args[2] = inside
        mounts = ["-v", f"{uploads}:/data"]
        if progress_file is not None and progress_args:
            progress_dir = progress_file.parent.resolve()
            mounts += ["-v", f"{progress_dir}:/progress"]
            progress_args[-1] = f"/progress/{progress_file.name}"
        return ["docker", "run", "--rm", *mounts, config.docker_image, *progress_args, *scan_args]

    return [*config.command, *progress_args, *scan_args]


def _to_container_path(path: str, uploads: Path) -> str:
    resolved = Path(path).resolve()
    try:
        return str(Path("/data") / resolved.relative_to(uploads))
    except ValueError:
        return str(resolved)


def parse_scan_output(text: str) -> ScanReport:
    """Parse scanner stdout, JSON first, then the plain-text CVE fallback."""
    try:
        data = json.loads(text)
    except ValueError:
        return _parse_text(text)
    if not isinstance(data, dict):
        return ScanReport()

    findings = []
    for raw in data.get("findings") or []:
        if not isinstance(raw, dict):
            continue
        source_ids = raw.get("source_ids") or []
        findings.append(
            Finding(
                id=str(raw.get("id") or ""),
                description=raw.get("description") or None,
                severity=raw.get("severity") or None,
                source=source_ids[0] if source_ids else raw.get("source"),
            )
        )
    summary = data.get("summary")
    return ScanReport(findings=findings, summary=summary if isinstance(summary, dict) else None)


def _parse_text(text: str) -> ScanReport:
    findings = []
    for line in text.splitlines():
        match = CVE_RE.search(line)
        if not match:
            continue
        after = ":".join(line.split(":")[1:]).strip()
        findings.append(Finding(id=match.group(0), description=after or None, source="NVD"))
    return ScanReport(findings=findings)
