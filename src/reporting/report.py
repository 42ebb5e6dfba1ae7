"""Apply reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

SENSITIVE_PLACEHOLDER = '(sensitive)'


@dataclass
class ReportEntry:
    """Outcome of one planned change."""
    change_id: str
    instance_key: str
    kind: str
    outcome: str  # 'applied', 'failed', 'skipped', 'no-op', 'not-started'
    error: Optional[str] = None
    replace: bool = False
    attempts: int = 0
    duration: float = 0.0

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'instance_key': self.instance_key,
            'kind': self.kind,
            'outcome': self.outcome,
            'replace': self.replace,
            'attempts': self.attempts,
            'duration': round(self.duration, 3),
        }
        if self.error:
            d['error'] = self.error
        return d


@dataclass
class ApplyReport:
    """Collects apply outcomes and renders them as JSON or Markdown."""
    name: str
    entries: list[ReportEntry] = field(default_factory=list)
    outputs: dict = field(default_factory=dict)
    sensitive_outputs: set = field(default_factory=set)
    fatal_error: Optional[str] = None
    halted: Optional[str] = None
    destroy: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        """True if every change was applied or was a no-op."""
        return all(e.outcome in ('applied', 'no-op') for e in self.entries)

    @property
    def duration(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in self.entries:
            counts[entry.outcome] = counts.get(entry.outcome, 0) + 1
        return counts

    def entry(self, instance_key: str, kind: Optional[str] = None) -> ReportEntry:
        """Find the entry for an instance (and kind, for replacements).

        Raises:
            KeyError: If no entry matches
        """
        for e in self.entries:
            if e.instance_key == instance_key and (kind is None or e.kind == kind):
                return e
        raise KeyError(instance_key)

    def display_outputs(self, show_sensitive: bool = False) -> dict:
        if show_sensitive:
            return dict(self.outputs)
        return {
            name: SENSITIVE_PLACEHOLDER if name in self.sensitive_outputs else value
            for name, value in self.outputs.items()
        }

    def to_dict(self, show_sensitive: bool = False) -> dict:
        """Return report as dictionary for JSON output."""
        result: dict[str, Any] = {
            'name': self.name,
            'success': self.success,
            'destroy': self.destroy,
            'duration_seconds': round(self.duration, 1),
            'counts': self.counts(),
            'changes': [e.to_dict() for e in self.entries],
        }
        if self.outputs:
            result['outputs'] = self.display_outputs(show_sensitive)
        if self.halted:
            result['halted'] = self.halted
        if self.fatal_error:
            result['fatal_error'] = self.fatal_error
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    def to_markdown(self) -> str:
        status = 'SUCCEEDED' if self.success else 'FAILED'
        lines = [
            f"# {'Destroy' if self.destroy else 'Apply'}: {self.name}",
            "",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
        ]
        if self.halted:
            lines.append(f"**Halted**: {self.halted}")
        if self.fatal_error:
            lines.append(f"**Fatal**: {self.fatal_error}")
        lines.extend([
            "",
            "## Changes",
            "",
            "| Instance | Change | Outcome | Attempts | Duration | Error |",
            "|----------|--------|---------|----------|----------|-------|",
        ])

        for e in self.entries:
            icon = {
                'applied': '✅', 'failed': '❌', 'skipped': '⏭️',
                'no-op': '➖', 'not-started': '⏸️',
            }.get(e.outcome, '❓')
            kind = f"{e.kind} (replace)" if e.replace else e.kind
            error = (e.error or '').replace('|', '\\|')
            lines.append(
                f"| {e.instance_key} | {kind} | {icon} {e.outcome} | {e.attempts} "
                f"| {e.duration:.1f}s | {error} |"
            )

        if self.outputs:
            lines.extend(["", "## Outputs", ""])
            for name, value in self.display_outputs().items():
                lines.append(f"- **{name}**: `{json.dumps(value, default=str)}`")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])
        return '\n'.join(lines)

    def write(self, report_dir: Path) -> list[Path]:
        """Write JSON and Markdown reports; returns the paths written."""
        report_dir.mkdir(parents=True, exist_ok=True)
        paths = []
        for ext, content in (('json', self.to_json()), ('md', self.to_markdown())):
            path = self._report_filename(report_dir, ext)
            with open(path, 'w', encoding="utf-8") as f:
                f.write(content)
            paths.append(path)
        return paths

    def _report_filename(self, report_dir: Path, ext: str) -> Path:
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'succeeded' if self.success else 'failed'
        slug = self.name.replace('/', '-')
        return report_dir / f"{timestamp}.{slug}.{status}.{ext}"
