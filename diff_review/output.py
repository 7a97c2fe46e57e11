"""Output rendering."""

from __future__ import annotations

import json
from itertools import groupby
from typing import Any

import click

from diff_review import __version__
from diff_review.diagnostics import Diagnostic
from diff_review.pipeline import RunStats
from diff_review.secret_guard import SecretFinding

TOOL_NAME = "diff-review"

_SEVERITY_COLORS = {"error": "red", "warn": "yellow", "info": "blue"}


def render_human(diagnostics: list[Diagnostic], stats: RunStats) -> str:
    """Render diagnostics grouped by file, eslint style."""
    lines: list[str] = []
    for path, group in groupby(diagnostics, key=lambda item: item.file):
        lines.append(click.style(path, underline=True))
        for diagnostic in group:
            position = f"{diagnostic.line}:{diagnostic.column or 0}"
            severity = click.style(
                diagnostic.severity.ljust(5), fg=_SEVERITY_COLORS[diagnostic.severity]
            )
            lines.append(f"  {position:<8}  {severity}  {diagnostic.rule_id}  {diagnostic.message}")
        lines.append("")

    errors = sum(1 for item in diagnostics if item.severity == "error")
    warnings = sum(1 for item in diagnostics if item.severity == "warn")
    total = len(diagnostics)
    if total:
        summary_color = "red" if errors else "yellow"
        lines.append(
            click.style(
                f"{total} problem{'s' if total != 1 else ''} ({errors} errors, {warnings} warnings)",
                fg=summary_color,
                bold=True,
            )
        )
    else:
        lines.append(click.style("No problems found.", fg="green", bold=True))

    lines.append(f"Rules run: {stats.rules_run} in {stats.duration_ms}ms")
    if stats.backend_errors:
        lines.append(
            click.style(f"Backend errors: {stats.backend_errors}", fg="red", bold=True)
        )
    return "\n".join(lines)


def render_json(diagnostics: list[Diagnostic], stats: RunStats) -> str:
    """Render stable JSON output for CI and automation."""
    return json.dumps(build_json_payload(diagnostics, stats), sort_keys=True)


def build_json_payload(diagnostics: list[Diagnostic], stats: RunStats) -> dict[str, Any]:
    return {
        "tool": {"name": TOOL_NAME, "version": __version__},
        "diagnostics": [item.to_dict() for item in diagnostics],
        "stats": stats.to_dict(),
    }


def render_secret_block(findings: list[SecretFinding], limit: int = 20) -> str:
    """Render the banner shown when the secret guard stops a run."""
    lines = [
        click.style(
            "Secret guard blocked analysis: potential secrets were detected in the diff. "
            "Nothing was sent to the backend.",
            fg="red",
            bold=True,
        ),
        "Allow a known-safe file by adding a glob to [security].allow_files "
        '(example: allow_files = ["src/fixtures/fake_keys.py"]), or a line regex to '
        "[security].allow_patterns.",
    ]
    for finding in findings[:limit]:
        lines.append(
            f"  {finding.file}:{finding.line}  {finding.kind}  sample={finding.redacted_sample}"
        )
    remaining = len(findings) - limit
    if remaining > 0:
        lines.append(f"  ...and {remaining} more finding(s)")
    return "\n".join(lines)


def render_diff_preview(included: list[str], excluded: list[str]) -> str:
    """List the files that will and will not be sent to the backend."""
    lines = [
        click.style("diff-review diff preview", fg="blue", bold=True),
        "",
        click.style(
            "Warning: every file included below will be sent to your agent.\n"
            "Run `diff-review security` for the security model.",
            fg="red",
        ),
        "",
        *_file_list("Included files", included),
        "",
        *_file_list("Excluded files", excluded),
    ]
    return "\n".join(lines)


def _file_list(title: str, files: list[str]) -> list[str]:
    if not files:
        return [f"{title} (0):", "  (none)"]
    return [f"{title} ({len(files)}):", *(f"  - {path}" for path in files)]
