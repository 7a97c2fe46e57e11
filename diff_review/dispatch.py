"""Rule dispatch: one backend call per rule, or one call for all rules."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from diff_review.backend import BackendError
from diff_review.diagnostics import Diagnostic, normalize_diagnostics
from diff_review.diff_parser import split_file_chunks
from diff_review.prompts import render_batch_prompt, render_rule_prompt
from diff_review.rules import Rule
from diff_review.scoping import build_scoped_diff, candidate_files

logger = logging.getLogger(__name__)

BATCH_LABEL = "Batch"


class Backend(Protocol):
    """Anything that turns a prompt into a raw diagnostics list."""

    async def run_prompt(self, label: str, prompt: str, timeout_ms: int) -> list[Any]:
        """Run a prompt, raising ``BackendError`` on unrecoverable failure."""


@dataclass(frozen=True, slots=True)
class DispatchSettings:
    """The slice of configuration dispatch needs."""

    timeout_ms: int
    include_globs: list[str] = field(default_factory=list)
    exclude_globs: list[str] = field(default_factory=list)
    resolve_root: Path | None = None


@dataclass(frozen=True, slots=True)
class RuleOutcome:
    """Result of one independent backend call."""

    label: str
    diagnostics: tuple[Diagnostic, ...] = ()
    backend_error: bool = False


@dataclass(frozen=True, slots=True)
class DispatchResult:
    diagnostics: list[Diagnostic]
    backend_errors: int


def merge_outcomes(outcomes: Sequence[RuleOutcome]) -> DispatchResult:
    """Fold independent outcomes into one result."""
    diagnostics: list[Diagnostic] = []
    for outcome in outcomes:
        diagnostics.extend(outcome.diagnostics)
    return DispatchResult(
        diagnostics=diagnostics,
        backend_errors=sum(1 for outcome in outcomes if outcome.backend_error),
    )


def build_batch_diff(
    rules: list[Rule],
    diff_text: str,
    changed_files: list[str],
    settings: DispatchSettings,
) -> str:
    """Union of every rule's scoped diff, in original diff order.

    A rule whose scoped diff degenerates to the full diff makes the union
    the full diff.
    """
    wanted: set[str] = set()
    for rule in rules:
        files = candidate_files(
            rule, changed_files, settings.include_globs, settings.exclude_globs
        )
        if not files:
            return diff_text
        wanted.update(files)

    combined = "\n".join(
        chunk.chunk
        for chunk in split_file_chunks(diff_text)
        if chunk.file and chunk.file in wanted
    )
    return combined if combined.strip() else diff_text


def group_by_rule(raw_diagnostics: list[Any], rule_ids: set[str]) -> dict[str, list[Any]]:
    """Group raw batch entries by their self-reported rule id.

    Entries that are not objects, lack a string ``rule_id``, or name a rule
    outside the batch are logged and dropped.
    """
    grouped: dict[str, list[Any]] = defaultdict(list)
    for raw in raw_diagnostics:
        if not isinstance(raw, dict) or not isinstance(raw.get("rule_id"), str):
            logger.debug("Batch: dropped diagnostic without valid rule_id")
            continue
        rule_id = raw["rule_id"]
        if rule_id not in rule_ids:
            logger.debug("Batch: dropped diagnostic for unknown rule_id %s", rule_id)
            continue
        grouped[rule_id].append(raw)
    return grouped


async def run_batch(
    rules: list[Rule],
    diff_text: str,
    changed_files: list[str],
    backend: Backend,
    settings: DispatchSettings,
) -> DispatchResult:
    """Evaluate all rules with a single backend call."""
    logger.debug("Running %d rule(s) in batch mode", len(rules))
    combined_diff = build_batch_diff(rules, diff_text, changed_files, settings)
    prompt = render_batch_prompt(rules, combined_diff)

    try:
        raw_diagnostics = await backend.run_prompt(BATCH_LABEL, prompt, settings.timeout_ms)
    except BackendError as exc:
        logger.warning("Batch backend error: %s", exc)
        return merge_outcomes([RuleOutcome(label=BATCH_LABEL, backend_error=True)])

    grouped = group_by_rule(raw_diagnostics, {rule.id for rule in rules})
    diagnostics: list[Diagnostic] = []
    for rule in rules:
        diagnostics.extend(
            normalize_diagnostics(rule.id, grouped.get(rule.id, []), settings.resolve_root)
        )
    return merge_outcomes([RuleOutcome(label=BATCH_LABEL, diagnostics=tuple(diagnostics))])


async def run_parallel(
    rules: list[Rule],
    diff_text: str,
    changed_files: list[str],
    backend: Backend,
    settings: DispatchSettings,
) -> DispatchResult:
    """Evaluate every rule with its own concurrent backend call."""
    logger.debug("Running %d rule(s) in parallel", len(rules))
    outcomes = await asyncio.gather(
        *(_run_rule(rule, diff_text, changed_files, backend, settings) for rule in rules)
    )
    return merge_outcomes(outcomes)


async def _run_rule(
    rule: Rule,
    diff_text: str,
    changed_files: list[str],
    backend: Backend,
    settings: DispatchSettings,
) -> RuleOutcome:
    label = f"Rule {rule.id}"
    started = time.perf_counter()
    scoped = build_scoped_diff(
        rule, diff_text, changed_files, settings.include_globs, settings.exclude_globs
    )
    prompt = render_rule_prompt(rule, scoped)

    try:
        raw_diagnostics = await backend.run_prompt(label, prompt, settings.timeout_ms)
    except BackendError as exc:
        logger.warning("Backend error for rule %s: %s", rule.id, exc)
        return RuleOutcome(label=label, backend_error=True)
    finally:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.debug("%s: finished in %dms", label, elapsed_ms)

    normalized = normalize_diagnostics(rule.id, raw_diagnostics, settings.resolve_root)
    return RuleOutcome(label=label, diagnostics=tuple(normalized))
