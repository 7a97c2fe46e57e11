"""Tests for batch and parallel rule dispatch."""

from __future__ import annotations

import asyncio
from pathlib import Path

from diff_review.backend import CommandBackend
from diff_review.dispatch import (
    BATCH_LABEL,
    DispatchSettings,
    RuleOutcome,
    build_batch_diff,
    group_by_rule,
    merge_outcomes,
    run_batch,
    run_parallel,
)
from diff_review.rules import Rule
from tests.helpers_backend import FakeBackend, script_command, write_backend_script

DIFF = "\n".join(
    [
        "diff --git a/src/app.py b/src/app.py",
        "+print('app')",
        "diff --git a/docs/guide.md b/docs/guide.md",
        "+# Guide",
        "diff --git a/lib/util.py b/lib/util.py",
        "+def util(): ...",
    ]
)
CHANGED = ["src/app.py", "docs/guide.md", "lib/util.py"]


def _rule(rule_id: str, **overrides) -> Rule:
    fields = {
        "id": rule_id,
        "title": f"{rule_id} title",
        "severity_default": "warn",
        "prompt": f"Instructions for {rule_id}.",
    }
    fields.update(overrides)
    return Rule(**fields)


def _repo(tmp_path: Path) -> Path:
    for path in CHANGED:
        target = tmp_path / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text("x\n", encoding="utf-8")
    return tmp_path


def _raw(rule_id: str, file: str = "src/app.py", line: int = 1, severity: str = "warn") -> dict:
    return {"rule_id": rule_id, "severity": severity, "message": "msg", "file": file, "line": line}


def test_merge_outcomes_counts_failures_and_concatenates() -> None:
    ok = RuleOutcome(label="Rule A", diagnostics=())
    failed = RuleOutcome(label="Rule B", backend_error=True)

    result = merge_outcomes([ok, failed, failed])

    assert result.diagnostics == []
    assert result.backend_errors == 2


def test_group_by_rule_drops_foreign_and_malformed_entries() -> None:
    grouped = group_by_rule(
        [_raw("A"), _raw("UNKNOWN"), "junk", {"rule_id": 5}, _raw("B"), _raw("A", line=2)],
        {"A", "B"},
    )
    assert [item["line"] for item in grouped["A"]] == [1, 2]
    assert len(grouped["B"]) == 1
    assert "UNKNOWN" not in grouped


def test_build_batch_diff_unions_scoped_files_in_diff_order() -> None:
    settings = DispatchSettings(timeout_ms=1000)
    rules = [_rule("A", include_globs=["lib/**"]), _rule("B", include_globs=["src/**"])]

    combined = build_batch_diff(rules, DIFF, CHANGED, settings)

    assert combined == "\n".join(
        [
            "diff --git a/src/app.py b/src/app.py",
            "+print('app')",
            "diff --git a/lib/util.py b/lib/util.py",
            "+def util(): ...",
        ]
    )


def test_build_batch_diff_falls_back_to_full_diff() -> None:
    settings = DispatchSettings(timeout_ms=1000)
    rules = [_rule("A", include_globs=["src/**"]), _rule("B", include_globs=["nowhere/**"])]
    assert build_batch_diff(rules, DIFF, CHANGED, settings) == DIFF


def test_run_batch_single_call_drops_unknown_rule_ids(tmp_path: Path) -> None:
    root = _repo(tmp_path)
    backend = FakeBackend(
        responses={
            BATCH_LABEL: [
                _raw("A", line=3),
                _raw("B", file="lib/util.py"),
                _raw("GHOST"),
                _raw("A", file="missing.py"),
            ]
        }
    )
    settings = DispatchSettings(timeout_ms=1000, resolve_root=root)

    result = asyncio.run(run_batch([_rule("A"), _rule("B")], DIFF, CHANGED, backend, settings))

    assert len(backend.calls) == 1
    label, prompt = backend.calls[0]
    assert label == BATCH_LABEL
    assert "RULE_ID: A" in prompt and "RULE_ID: B" in prompt
    assert result.backend_errors == 0
    assert sorted((item.rule_id, item.file) for item in result.diagnostics) == [
        ("A", "src/app.py"),
        ("B", "lib/util.py"),
    ]


def test_run_batch_backend_failure_counts_once(tmp_path: Path) -> None:
    backend = FakeBackend(failures={BATCH_LABEL})
    settings = DispatchSettings(timeout_ms=1000, resolve_root=_repo(tmp_path))

    result = asyncio.run(
        run_batch([_rule("A"), _rule("B"), _rule("C")], DIFF, CHANGED, backend, settings)
    )

    assert result.diagnostics == []
    assert result.backend_errors == 1


def test_run_parallel_isolates_rule_failures(tmp_path: Path) -> None:
    backend = FakeBackend(
        responses={"Rule A": [_raw("A")], "Rule C": [_raw("C", severity="error")]},
        failures={"Rule B"},
    )
    settings = DispatchSettings(timeout_ms=1000, resolve_root=_repo(tmp_path))

    result = asyncio.run(
        run_parallel([_rule("A"), _rule("B"), _rule("C")], DIFF, CHANGED, backend, settings)
    )

    assert result.backend_errors == 1
    assert sorted(item.rule_id for item in result.diagnostics) == ["A", "C"]
    assert sorted(label for label, _ in backend.calls) == ["Rule A", "Rule B", "Rule C"]


def test_run_parallel_overlong_file_path_does_not_sink_sibling_rules(tmp_path: Path) -> None:
    backend = FakeBackend(
        responses={"Rule A": [_raw("A", file="a" * 300)], "Rule B": [_raw("B")]},
    )
    settings = DispatchSettings(timeout_ms=1000, resolve_root=_repo(tmp_path))

    result = asyncio.run(run_parallel([_rule("A"), _rule("B")], DIFF, CHANGED, backend, settings))

    assert result.backend_errors == 0
    assert [item.rule_id for item in result.diagnostics] == ["B"]


def test_run_parallel_sends_each_rule_its_scoped_diff(tmp_path: Path) -> None:
    backend = FakeBackend()
    settings = DispatchSettings(
        timeout_ms=1000, exclude_globs=["*.md"], resolve_root=_repo(tmp_path)
    )
    rules = [_rule("DOCS", include_globs=["docs/**"], exclude_globs=[]), _rule("CODE")]

    asyncio.run(run_parallel(rules, DIFF, CHANGED, backend, settings))

    prompts = dict(backend.calls)
    assert "docs/guide.md" in prompts["Rule DOCS"]
    assert "src/app.py" not in prompts["Rule DOCS"]
    assert "docs/guide.md" not in prompts["Rule CODE"]
    assert "lib/util.py" in prompts["Rule CODE"]


def test_run_parallel_rule_failing_twice_yields_one_backend_error(tmp_path: Path) -> None:
    script = write_backend_script(tmp_path, "sys.exit(1)\n")
    backend = CommandBackend(script_command(script), interactive=False)
    settings = DispatchSettings(timeout_ms=5000, resolve_root=_repo(tmp_path))

    result = asyncio.run(run_parallel([_rule("A")], DIFF, CHANGED, backend, settings))

    assert result.diagnostics == []
    assert result.backend_errors == 1
