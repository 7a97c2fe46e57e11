"""Gitignore-style glob matching shared by rule scoping and the secret guard."""

from __future__ import annotations

from collections.abc import Iterable

from pathspec import GitIgnoreSpec


def compile_globs(patterns: Iterable[str]) -> GitIgnoreSpec | None:
    """Compile glob patterns, or return ``None`` when there is nothing to match.

    Patterns follow gitignore semantics: ``**`` spans directories, a pattern
    without a slash matches a basename at any depth, and ``!`` re-includes.
    """
    lines = [pattern.strip() for pattern in patterns if pattern.strip()]
    if not lines:
        return None
    return GitIgnoreSpec.from_lines(lines)


def matches(spec: GitIgnoreSpec | None, path: str) -> bool:
    if spec is None:
        return False
    return spec.match_file(path)
