"""Rule model and severity vocabulary."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Severity = Literal["error", "warn", "info"]

SEVERITIES: tuple[str, ...] = ("error", "warn", "info")
SEVERITY_RANK: dict[str, int] = {"error": 3, "warn": 2, "info": 1}


@dataclass(frozen=True, slots=True)
class Rule:
    """A review rule loaded from a JSON definition file.

    Glob and regex lists keep ``None`` when the key was absent so that
    scoping can tell "inherit" apart from "explicitly empty".
    """

    id: str
    title: str
    severity_default: Severity
    prompt: str
    include_globs: list[str] | None = None
    exclude_globs: list[str] | None = None
    diff_regex: list[str] | None = None
    severity_override: Severity | None = None
    source_path: str | None = None

    @property
    def effective_severity(self) -> Severity:
        return self.severity_override or self.severity_default


def is_severity(value: object) -> bool:
    return isinstance(value, str) and value in SEVERITIES
