"""Review pipeline: gate the diff, select rules, dispatch and decide the outcome."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from diff_review.config import AppConfig
from diff_review.diagnostics import Diagnostic, is_blocking, sort_diagnostics
from diff_review.diff_parser import changed_files_from_diff
from diff_review.dispatch import Backend, DispatchSettings, run_batch, run_parallel
from diff_review.rules import Rule
from diff_review.scoping import should_run_rule
from diff_review.secret_guard import SecretFinding, filter_by_ignore_rules, scan_for_secrets

logger = logging.getLogger(__name__)


class ReviewStatus(Enum):
    CLEAN = "clean"
    BLOCKING = "blocking"
    BACKEND_ERROR = "backend_error"
    SECRETS_BLOCKED = "secrets_blocked"
    ABORTED = "aborted"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    ReviewStatus.CLEAN: 0,
    ReviewStatus.BLOCKING: 1,
    ReviewStatus.BACKEND_ERROR: 2,
    ReviewStatus.SECRETS_BLOCKED: 2,
    ReviewStatus.ABORTED: 2,
}


@dataclass(frozen=True, slots=True)
class RunStats:
    rules_run: int
    duration_ms: int
    backend_errors: int

    def to_dict(self) -> dict[str, int]:
        return {
            "rules_run": self.rules_run,
            "duration_ms": self.duration_ms,
            "backend_errors": self.backend_errors,
        }


@dataclass(frozen=True, slots=True)
class PreparedReview:
    """Everything decided before any backend is contacted."""

    diff_text: str
    excluded_files: list[str]
    changed_files: list[str]
    runnable_rules: list[Rule]
    secret_findings: list[SecretFinding] = field(default_factory=list)

    @property
    def blocked_by_secrets(self) -> bool:
        return bool(self.secret_findings)


@dataclass(frozen=True, slots=True)
class ReviewOutcome:
    status: ReviewStatus
    diagnostics: list[Diagnostic]
    stats: RunStats


def prepare_review(raw_diff: str, rules: list[Rule], config: AppConfig, root: Path) -> PreparedReview:
    """Filter ignored files, scan for secrets and pick the rules that apply.

    When secrets are found no rules are selected; callers must stop before
    building a backend.
    """
    security = config.security
    filtered = filter_by_ignore_rules(raw_diff, root, security.ignore_files)
    diff_text = filtered.filtered_diff

    findings: list[SecretFinding] = []
    if security.secret_guard:
        findings = scan_for_secrets(diff_text, security.allow_patterns, security.allow_files)
    else:
        logger.debug("Secret guard disabled by configuration")

    changed_files = changed_files_from_diff(diff_text)
    if findings:
        logger.debug("Secret guard blocked the run with %d finding(s)", len(findings))
        return PreparedReview(
            diff_text=diff_text,
            excluded_files=filtered.excluded_files,
            changed_files=changed_files,
            runnable_rules=[],
            secret_findings=findings,
        )

    include = config.rules.include_globs
    exclude = config.rules.exclude_globs
    runnable = [
        rule for rule in rules if should_run_rule(rule, changed_files, diff_text, include, exclude)
    ]
    logger.debug("%d of %d rule(s) runnable", len(runnable), len(rules))
    return PreparedReview(
        diff_text=diff_text,
        excluded_files=filtered.excluded_files,
        changed_files=changed_files,
        runnable_rules=runnable,
    )


async def execute_review(
    prepared: PreparedReview,
    backend: Backend | None,
    config: AppConfig,
    resolve_root: Path | None = None,
) -> ReviewOutcome:
    """Dispatch runnable rules and fold the results into an outcome."""
    if prepared.blocked_by_secrets:
        raise ValueError("Refusing to dispatch a review blocked by the secret guard")

    started = time.perf_counter()
    rules = prepared.runnable_rules
    if not rules:
        return ReviewOutcome(
            status=ReviewStatus.CLEAN,
            diagnostics=[],
            stats=RunStats(rules_run=0, duration_ms=0, backend_errors=0),
        )
    if backend is None:
        raise ValueError("A backend is required when rules are runnable")

    settings = DispatchSettings(
        timeout_ms=config.timeout_ms,
        include_globs=config.rules.include_globs,
        exclude_globs=config.rules.exclude_globs,
        resolve_root=resolve_root,
    )
    dispatch = run_batch if config.batch else run_parallel
    result = await dispatch(rules, prepared.diff_text, prepared.changed_files, backend, settings)

    diagnostics = sort_diagnostics(result.diagnostics)
    stats = RunStats(
        rules_run=len(rules),
        duration_ms=int((time.perf_counter() - started) * 1000),
        backend_errors=result.backend_errors,
    )
    return ReviewOutcome(
        status=decide_status(diagnostics, result.backend_errors, config.fail_on),
        diagnostics=diagnostics,
        stats=stats,
    )


def decide_status(diagnostics: list[Diagnostic], backend_errors: int, fail_on: str) -> ReviewStatus:
    if backend_errors > 0:
        return ReviewStatus.BACKEND_ERROR
    if is_blocking(diagnostics, fail_on):
        return ReviewStatus.BLOCKING
    return ReviewStatus.CLEAN
