"""Rules package: loading review rules from JSON definition files."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

from diff_review.rules.base import SEVERITIES, Rule, Severity, is_severity

__all__ = [
    "DEFAULT_RULES_DIR",
    "EXAMPLE_RULE_ID",
    "Rule",
    "RuleLoadError",
    "SEVERITIES",
    "Severity",
    "example_rule_template",
    "load_rules",
    "parse_rule",
]

DEFAULT_RULES_DIR = Path(".diff-review") / "rules"
EXAMPLE_RULE_ID = "DIFF_REVIEW_EXAMPLE_001"

logger = logging.getLogger(__name__)


def example_rule_template() -> str:
    """Starter rule written by ``config-init``; edit the title and prompt."""
    example = {
        "id": EXAMPLE_RULE_ID,
        "title": "My first rule",
        "severity_default": "warn",
        "prompt": (
            "Describe what the agent should check in the changed code. Example: flag new "
            "public functions without docstrings, or missing error handling."
        ),
    }
    return json.dumps(example, indent=2) + "\n"


class RuleLoadError(ValueError):
    """Raised when a rule definition file is missing fields or malformed."""


def load_rules(
    rules_dir: Path,
    *,
    disabled_rule_ids: list[str] | None = None,
    severity_overrides: dict[str, str] | None = None,
) -> list[Rule]:
    """Load, validate and filter rules from ``*.json`` files in a directory."""
    if not rules_dir.exists():
        logger.debug("Rules directory %s does not exist", rules_dir)
        return []
    if not rules_dir.is_dir():
        raise RuleLoadError(f"Rules path is not a directory: {rules_dir}")

    overrides = severity_overrides or {}
    disabled = set(disabled_rule_ids or [])
    seen_ids: set[str] = set()
    loaded: list[Rule] = []

    for path in sorted(rules_dir.glob("*.json")):
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RuleLoadError(f"Failed to parse rule JSON in {path}: {exc}") from exc

        rule = parse_rule(raw, source=str(path))
        if rule.id in seen_ids:
            raise RuleLoadError(f"Duplicate rule id detected: {rule.id}")
        seen_ids.add(rule.id)

        override = overrides.get(rule.id)
        if override is not None:
            if not is_severity(override):
                raise RuleLoadError(f"Invalid severity override for rule {rule.id}: {override}")
            rule = replace(rule, severity_override=override)

        if rule.id in disabled:
            logger.debug("Rule %s disabled by configuration", rule.id)
            continue
        loaded.append(rule)

    return sorted(loaded, key=lambda item: item.id)


def parse_rule(raw: Any, *, source: str) -> Rule:
    """Validate one decoded rule definition."""
    if not isinstance(raw, dict):
        raise RuleLoadError(f"Invalid rule in {source}: root must be a JSON object")

    severity = _required_str(raw, "severity_default", source)
    if not is_severity(severity):
        choices = "|".join(SEVERITIES)
        raise RuleLoadError(f'Invalid rule in {source}: "severity_default" must be one of {choices}')

    return Rule(
        id=_required_str(raw, "id", source),
        title=_required_str(raw, "title", source),
        severity_default=severity,  # type: ignore[arg-type]
        prompt=_required_str(raw, "prompt", source),
        include_globs=_optional_str_list(raw, "include_globs", source),
        exclude_globs=_optional_str_list(raw, "exclude_globs", source),
        diff_regex=_optional_str_list(raw, "diff_regex", source),
        source_path=source,
    )


def _required_str(raw: dict[str, Any], field_name: str, source: str) -> str:
    value = raw.get(field_name)
    if not isinstance(value, str) or not value.strip():
        raise RuleLoadError(f'Invalid rule in {source}: "{field_name}" must be a non-empty string')
    return value


def _optional_str_list(raw: dict[str, Any], field_name: str, source: str) -> list[str] | None:
    value = raw.get(field_name)
    if value is None:
        return None
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise RuleLoadError(f'Invalid rule in {source}: "{field_name}" must be an array of strings')
    return list(value)
