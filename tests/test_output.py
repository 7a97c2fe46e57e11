"""Tests for output rendering."""

from __future__ import annotations

import json
import logging

import click

from diff_review import __version__
from diff_review.diagnostics import Diagnostic
from diff_review.logging_config import ColoredFormatter, configure_logging
from diff_review.output import (
    render_diff_preview,
    render_human,
    render_json,
    render_secret_block,
)
from diff_review.pipeline import RunStats
from diff_review.secret_guard import SecretFinding

STATS = RunStats(rules_run=2, duration_ms=15, backend_errors=0)


def _diagnostics() -> list[Diagnostic]:
    return [
        Diagnostic(rule_id="R1", severity="error", message="Bad call", file="a.py", line=3, column=7),
        Diagnostic(rule_id="R2", severity="warn", message="Odd name", file="a.py", line=9),
        Diagnostic(
            rule_id="R2",
            severity="info",
            message="Consider docs",
            file="b.py",
            line=1,
            evidence="def f():",
            confidence=0.5,
        ),
    ]


def test_render_json_has_stable_shape() -> None:
    payload = json.loads(render_json(_diagnostics(), STATS))

    assert sorted(payload) == ["diagnostics", "stats", "tool"]
    assert payload["tool"] == {"name": "diff-review", "version": __version__}
    assert payload["stats"] == {"backend_errors": 0, "duration_ms": 15, "rules_run": 2}
    assert payload["diagnostics"][0] == {
        "column": 7,
        "file": "a.py",
        "line": 3,
        "message": "Bad call",
        "rule_id": "R1",
        "severity": "error",
    }
    assert "column" not in payload["diagnostics"][1]
    assert payload["diagnostics"][2]["evidence"] == "def f():"


def test_render_json_is_deterministic() -> None:
    assert render_json(_diagnostics(), STATS) == render_json(_diagnostics(), STATS)


def test_render_human_groups_by_file_with_summary() -> None:
    text = click.unstyle(render_human(_diagnostics(), STATS))
    lines = text.splitlines()

    assert lines[0] == "a.py"
    assert "3:7" in lines[1] and "error" in lines[1] and "R1" in lines[1] and "Bad call" in lines[1]
    assert "9:0" in lines[2]
    assert "b.py" in lines
    assert "3 problems (1 errors, 1 warnings)" in text
    assert "Rules run: 2" in text
    assert "Backend errors" not in text


def test_render_human_reports_backend_errors_and_clean_run() -> None:
    text = click.unstyle(render_human([], RunStats(rules_run=1, duration_ms=1, backend_errors=1)))
    assert "No problems found." in text
    assert "Backend errors: 1" in text


def test_render_secret_block_truncates_after_limit() -> None:
    findings = [
        SecretFinding(file="app.py", line=index, kind="long_token", redacted_sample="ab***yz")
        for index in range(1, 26)
    ]

    text = click.unstyle(render_secret_block(findings, limit=20))

    assert "Nothing was sent to the backend" in text
    assert "  app.py:1  long_token  sample=ab***yz" in text
    assert "app.py:21" not in text
    assert "...and 5 more finding(s)" in text


def test_render_diff_preview_lists_included_and_excluded() -> None:
    text = click.unstyle(render_diff_preview(["src/a.py"], []))
    assert "Included files (1):" in text
    assert "  - src/a.py" in text
    assert "Excluded files (0):" in text
    assert "(none)" in text


def test_colored_formatter_plain_and_colored() -> None:
    record = logging.LogRecord("diff_review.x", logging.WARNING, __file__, 1, "hello %s", ("w",), None)

    assert ColoredFormatter(use_color=False).format(record) == "WARNING diff_review.x: hello w"
    assert click.unstyle(ColoredFormatter(use_color=True).format(record)) == "WARNING diff_review.x: hello w"


def test_configure_logging_sets_level_and_single_handler() -> None:
    logger = configure_logging(debug=True)
    configure_logging(debug=True)
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 1

    configure_logging(debug=False)
    assert logger.level == logging.WARNING
