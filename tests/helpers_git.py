"""Helpers for synthetic git-repo integration tests."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any


def init_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "user.name", "Test")
    git(repo, "config", "commit.gpgsign", "false")
    return repo


def git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def write_file(repo: Path, rel_path: str, content: str) -> None:
    target = repo / rel_path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")


def commit_all(repo: Path, message: str) -> None:
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", message)


def write_rule(repo: Path, rule_id: str, **fields: Any) -> Path:
    """Write a rule definition into the default rules directory."""
    payload: dict[str, Any] = {
        "id": rule_id,
        "title": f"{rule_id} title",
        "severity_default": "error",
        "prompt": f"Look for {rule_id} problems.",
    }
    payload.update(fields)
    target = repo / ".diff-review" / "rules" / f"{rule_id.lower()}.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(payload), encoding="utf-8")
    return target
