"""Prompt templates sent to analysis backends."""

from __future__ import annotations

from diff_review.rules import Rule

OUTPUT_CONTRACT = "\n".join(
    [
        "## Output contract",
        "Respond with a single JSON object and nothing else:",
        '{"diagnostics": [{"rule_id": "...", "severity": "error|warn|info", '
        '"message": "...", "file": "...", "line": 1}]}',
        "- `rule_id` must be the id of the rule that produced the diagnostic.",
        "- `file` is the repository-relative path exactly as it appears in the diff.",
        "- `line` is a 1-based line number in the new version of the file.",
        "- Optional fields: `column`, `end_line`, `end_column` (positive integers), "
        "`evidence` (string), `confidence` (number between 0 and 1).",
        "- Report only problems introduced or touched by the diff.",
        '- Return {"diagnostics": []} when nothing needs attention.',
    ]
)

STRICT_JSON_RETRY_INSTRUCTION = (
    "Your previous answer could not be parsed. Return ONLY valid JSON matching "
    '{"diagnostics": [...]} with no prose, no markdown fences, and no trailing text.'
)


def render_rule_prompt(rule: Rule, diff_text: str) -> str:
    """Build the prompt for evaluating one rule against a scoped diff."""
    lines = [
        "You are reviewing a code change against a single review rule.",
        "",
        OUTPUT_CONTRACT,
        "",
        "## Rule",
        f"RULE_ID: {rule.id}",
        f"RULE_TITLE: {rule.title}",
        f"SEVERITY_DEFAULT: {rule.effective_severity}",
        "",
        "## Instructions",
        rule.prompt.strip(),
        "",
        "## Diff",
        "```diff",
        diff_text,
        "```",
    ]
    return "\n".join(lines).strip() + "\n"


def render_batch_prompt(rules: list[Rule], diff_text: str) -> str:
    """Build one prompt that evaluates several rules in a single backend call."""
    blocks = "\n\n---\n\n".join(_rule_block(rule) for rule in rules)
    lines = [
        "You are reviewing a code change against several review rules at once.",
        "Tag every diagnostic with the RULE_ID of the rule it belongs to.",
        "",
        OUTPUT_CONTRACT,
        "",
        "## Rules",
        blocks,
        "",
        "## Diff",
        "```diff",
        diff_text,
        "```",
    ]
    return "\n".join(lines).strip() + "\n"


def with_strict_json_retry(prompt: str) -> str:
    return f"{prompt}\n\n{STRICT_JSON_RETRY_INSTRUCTION}"


def _rule_block(rule: Rule) -> str:
    return "\n".join(
        [
            f"RULE_ID: {rule.id}",
            f"RULE_TITLE: {rule.title}",
            f"SEVERITY_DEFAULT: {rule.effective_severity}",
            "INSTRUCTIONS:",
            rule.prompt.strip(),
        ]
    )
