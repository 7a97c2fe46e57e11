"""Per-rule file scoping and scoped-diff reconstruction."""

from __future__ import annotations

import logging
import re

from diff_review.diff_parser import split_file_chunks
from diff_review.globs import compile_globs, matches
from diff_review.rules import Rule

logger = logging.getLogger(__name__)


def resolve_rule_globs(rule_globs: list[str] | None, global_globs: list[str]) -> list[str]:
    """Pick the glob list a rule is filtered with.

    An omitted rule list (``None``) inherits the global list; an explicit
    list, even an empty one, replaces it. An empty result means no filter.
    """
    if rule_globs is None:
        return list(global_globs)
    return list(rule_globs)


def candidate_files(
    rule: Rule,
    changed_files: list[str],
    global_include: list[str] | None = None,
    global_exclude: list[str] | None = None,
) -> list[str]:
    """Return the changed files a rule is allowed to see, in input order."""
    include_spec = compile_globs(resolve_rule_globs(rule.include_globs, global_include or []))
    exclude_spec = compile_globs(resolve_rule_globs(rule.exclude_globs, global_exclude or []))

    candidates = list(changed_files)
    if include_spec is not None:
        candidates = [path for path in candidates if matches(include_spec, path)]
        if not candidates:
            return []

    if exclude_spec is not None:
        candidates = [path for path in candidates if not matches(exclude_spec, path)]

    return candidates


def diff_regex_matches(patterns: list[str], diff_text: str) -> bool:
    """Return whether any pattern matches the diff in multiline mode.

    A pattern that fails to compile fails the whole gate.
    """
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.MULTILINE))
        except re.error as exc:
            logger.debug("Invalid diff_regex %r: %s", pattern, exc)
            return False
    return any(regex.search(diff_text) for regex in compiled)


def should_run_rule(
    rule: Rule,
    changed_files: list[str],
    diff_text: str,
    global_include: list[str] | None = None,
    global_exclude: list[str] | None = None,
) -> bool:
    """Decide whether a rule has anything to review in this diff."""
    if not candidate_files(rule, changed_files, global_include, global_exclude):
        logger.debug("Skipping rule %s: no candidate files", rule.id)
        return False

    if rule.diff_regex and not diff_regex_matches(rule.diff_regex, diff_text):
        logger.debug("Skipping rule %s: diff_regex did not match", rule.id)
        return False

    return True


def build_scoped_diff(
    rule: Rule,
    full_diff: str,
    changed_files: list[str],
    global_include: list[str] | None = None,
    global_exclude: list[str] | None = None,
) -> str:
    """Rebuild the diff restricted to a rule's candidate files.

    Falls back to the full diff when the scoped text would be blank, so a
    backend is never handed an empty diff.
    """
    wanted = set(candidate_files(rule, changed_files, global_include, global_exclude))
    return scoped_diff_for_files(full_diff, wanted)


def scoped_diff_for_files(full_diff: str, files: set[str]) -> str:
    if not files:
        return full_diff
    scoped = "\n".join(
        chunk.chunk
        for chunk in split_file_chunks(full_diff)
        if chunk.file and chunk.file in files
    )
    return scoped if scoped.strip() else full_diff
