"""Validation, ordering and threshold checks for backend diagnostics.

Backend output is untrusted. Every raw entry goes through
``validate_diagnostic`` which returns either an ``Accepted`` wrapping a
``Diagnostic`` or a ``Rejected`` carrying the reason; nothing else in
the package inspects raw entries field by field.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from diff_review.rules.base import SEVERITY_RANK, Severity, is_severity

logger = logging.getLogger(__name__)

FailOn = Literal["error", "warn", "never"]
FAIL_ON_CHOICES: tuple[str, ...] = ("error", "warn", "never")


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """A validated review diagnostic."""

    rule_id: str
    severity: Severity
    message: str
    file: str
    line: int
    column: int | None = None
    end_line: int | None = None
    end_column: int | None = None
    evidence: str | None = None
    confidence: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "rule_id": self.rule_id,
            "severity": self.severity,
            "message": self.message,
            "file": self.file,
            "line": self.line,
        }
        for key in ("column", "end_line", "end_column", "evidence", "confidence"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True, slots=True)
class Accepted:
    diagnostic: Diagnostic


@dataclass(frozen=True, slots=True)
class Rejected:
    reason: str


def validate_diagnostic(rule_id: str, raw: Any, base_dir: Path) -> Accepted | Rejected:
    """Check one raw backend entry against the issuing rule and the filesystem."""
    if not isinstance(raw, dict):
        return Rejected("not an object")

    if raw.get("rule_id") != rule_id:
        return Rejected(f"rule_id mismatch ({raw.get('rule_id')!r})")

    file_value = raw.get("file")
    message = raw.get("message")
    severity = raw.get("severity")
    line = _positive_int(raw.get("line"))
    if not isinstance(file_value, str) or not file_value.strip():
        return Rejected("file must be a non-empty string")
    if not isinstance(message, str) or not message.strip():
        return Rejected("message must be a non-empty string")
    if not is_severity(severity):
        return Rejected(f"invalid severity ({severity!r})")
    if line is None:
        return Rejected(f"line must be a positive integer ({raw.get('line')!r})")

    if not _file_exists(base_dir / file_value):
        return Rejected(f"file does not exist ({file_value})")

    evidence = raw.get("evidence")
    return Accepted(
        Diagnostic(
            rule_id=rule_id,
            severity=severity,
            message=message,
            file=file_value,
            line=line,
            column=_positive_int(raw.get("column")),
            end_line=_positive_int(raw.get("end_line")),
            end_column=_positive_int(raw.get("end_column")),
            evidence=evidence if isinstance(evidence, str) else None,
            confidence=_number(raw.get("confidence")),
        )
    )


def normalize_diagnostics(
    rule_id: str,
    raw_diagnostics: list[Any],
    resolve_root: Path | str | None = None,
) -> list[Diagnostic]:
    """Keep the raw entries that validate, logging each one that does not."""
    base_dir = Path(resolve_root) if resolve_root else Path(os.getcwd())
    kept: list[Diagnostic] = []
    for raw in raw_diagnostics:
        result = validate_diagnostic(rule_id, raw, base_dir)
        if isinstance(result, Rejected):
            logger.debug("Dropped diagnostic for %s: %s", rule_id, result.reason)
            continue
        kept.append(result.diagnostic)
    return kept


def sort_diagnostics(diagnostics: list[Diagnostic]) -> list[Diagnostic]:
    """Order by file, then line, then severity (error first); stable for ties."""
    return sorted(
        diagnostics,
        key=lambda item: (item.file, item.line, -SEVERITY_RANK[item.severity]),
    )


def is_blocking(diagnostics: list[Diagnostic], threshold: str) -> bool:
    """Return whether any diagnostic meets the failure threshold."""
    if threshold == "never":
        return False
    if threshold == "warn":
        return any(item.severity in {"warn", "error"} for item in diagnostics)
    return any(item.severity == "error" for item in diagnostics)


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 1 else None
    if isinstance(value, float) and value.is_integer() and value >= 1:
        return int(value)
    return None


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _file_exists(path: Path) -> bool:
    # ENAMETOOLONG and similar stat errors count as missing.
    try:
        return path.exists()
    except (OSError, ValueError):
        return False
