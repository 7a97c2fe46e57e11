"""Git subprocess helpers."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from subprocess import run
from typing import Literal

logger = logging.getLogger(__name__)

LocalDiffKind = Literal["staged", "unstaged", "untracked"]
LOCAL_DIFF_KINDS: tuple[LocalDiffKind, ...] = ("staged", "unstaged", "untracked")


class GitError(RuntimeError):
    """Raised when git command execution fails."""


def get_diff_between(repo: Path, base: str, head: str) -> str:
    """Return diff between two revisions."""
    return _run_git(repo, ["diff", "--no-color", base, head])


def get_staged_diff(repo: Path) -> str:
    return _run_git(repo, ["diff", "--no-color", "--cached"])


def get_unstaged_diff(repo: Path) -> str:
    return _run_git(repo, ["diff", "--no-color"])


def list_untracked_files(repo: Path) -> list[str]:
    """Return untracked, non-ignored paths relative to the repository root."""
    output = _run_git(repo, ["ls-files", "--others", "--exclude-standard"])
    return [line for line in output.splitlines() if line.strip()]


def get_untracked_diff(repo: Path) -> str:
    """Return new-file diffs for every untracked path."""
    parts: list[str] = []
    for path in list_untracked_files(repo):
        # --no-index exits 1 when the files differ, which they always do here.
        parts.append(
            _run_git(
                repo,
                ["diff", "--no-color", "--no-index", "--", os.devnull, path],
                ok_codes=(0, 1),
            )
        )
    return "\n".join(part.rstrip("\n") for part in parts if part.strip())


def get_local_diff(repo: Path, kinds: list[LocalDiffKind] | None = None) -> str:
    """Return the working-tree diff for the selected kinds.

    Defaults to staged, unstaged and untracked changes, in that order.
    """
    selected = list(kinds) if kinds is not None else list(LOCAL_DIFF_KINDS)
    parts: dict[str, str] = {}
    if "staged" in selected:
        parts["staged"] = get_staged_diff(repo)
    if "unstaged" in selected:
        parts["unstaged"] = get_unstaged_diff(repo)
    if "untracked" in selected:
        parts["untracked"] = get_untracked_diff(repo)
    return select_local_diff_parts(parts, selected)


def select_local_diff_parts(parts: dict[str, str], kinds: list[str]) -> str:
    """Join the non-empty diff parts for the selected kinds in kind order."""
    selected: list[str] = []
    for kind in LOCAL_DIFF_KINDS:
        if kind not in kinds:
            continue
        text = parts.get(kind, "")
        if text.strip():
            selected.append(text.rstrip("\n"))
    return "\n".join(selected)


def get_repo_root(repo: Path) -> Path | None:
    """Return the repository top-level directory, or ``None`` outside a repository."""
    try:
        output = _run_git(repo, ["rev-parse", "--show-toplevel"]).strip()
    except GitError:
        return None
    return Path(output) if output else None


def _run_git(repo: Path, args: list[str], ok_codes: tuple[int, ...] = (0,)) -> str:
    logger.debug("git %s (cwd=%s)", " ".join(args), repo)
    try:
        completed = run(
            ["git", *args],
            cwd=repo,
            check=False,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise GitError("git executable not found") from exc

    if completed.returncode not in ok_codes:
        stderr = (completed.stderr or "").strip()
        raise GitError(stderr or f"git {' '.join(args)} failed")

    return completed.stdout
