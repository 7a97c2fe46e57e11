"""Fail-closed secret guard run before any backend call.

Two independent passes:

* ``filter_by_ignore_rules`` drops whole file chunks whose paths match the
  repository ignore files or a built-in list of sensitive paths.
* ``scan_for_secrets`` walks the added lines of the remaining diff and
  reports anything that looks like a credential. Any finding blocks the
  run; nothing is sent to a backend.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from pathspec import GitIgnoreSpec

from diff_review.diff_parser import (
    DIFF_HEADER_PREFIX,
    HUNK_HEADER_RE,
    parse_diff_header,
    split_file_chunks,
)
from diff_review.globs import compile_globs, matches

logger = logging.getLogger(__name__)

BUILTIN_SENSITIVE_GLOBS: tuple[str, ...] = (
    ".env",
    ".env.*",
    "*.pem",
    "*.key",
    "*.p12",
    "*.pfx",
    "id_rsa",
    "id_rsa.*",
    "id_ed25519",
    "id_ed25519.*",
    "**/secrets/**",
    "**/credentials/**",
    "**/*credentials*.json",
)

REDACTION_MASK = "***"
UNKNOWN_FILE = "(unknown)"
LONG_TOKEN_MIN_LENGTH = 32


@dataclass(frozen=True, slots=True)
class SecretFinding:
    """A probable secret on an added line, in new-file line coordinates."""

    file: str
    line: int
    kind: str
    redacted_sample: str

    def to_dict(self) -> dict[str, object]:
        return {
            "file": self.file,
            "line": self.line,
            "kind": self.kind,
            "redacted_sample": self.redacted_sample,
        }


@dataclass(frozen=True, slots=True)
class IgnoreFilterResult:
    filtered_diff: str
    excluded_files: list[str]


@dataclass(frozen=True, slots=True)
class _Detector:
    kind: str
    pattern: re.Pattern[str]


_DETECTORS: tuple[_Detector, ...] = (
    _Detector(
        "private_key",
        re.compile(r"-----BEGIN (?:[A-Z0-9]+ )*PRIVATE KEY(?: BLOCK)?-----"),
    ),
    _Detector("aws_access_key", re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    _Detector(
        "github_token",
        re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{22,})"),
    ),
    _Detector("slack_token", re.compile(r"\bxox[abprs]-[A-Za-z0-9-]{10,}")),
    _Detector("stripe_key", re.compile(r"\b[rs]k_live_[A-Za-z0-9]{16,}")),
    _Detector("openai_key", re.compile(r"\bsk-(?:proj-)?[A-Za-z0-9_-]{20,}")),
    _Detector("google_api_key", re.compile(r"\bAIza[0-9A-Za-z_-]{35}")),
)

_ASSIGNMENT_RE = re.compile(
    r"(?i)(?P<keyword>api[_-]?key|secret|token|passw(?:or)?d|pwd|credential)"
    r"[a-z0-9_-]*['\"]?\s*[:=]\s*"
    r"(?:(?P<quote>['\"])(?P<quoted>[^'\"\s]{6,})(?P=quote)"
    r"|(?P<bare>[^\s'\"`()\[\]{},;.]{8,})\s*$)"
)
_LONG_TOKEN_RE = re.compile(r"[A-Za-z0-9+/=_-]{%d,}" % LONG_TOKEN_MIN_LENGTH)


def read_ignore_patterns(root: Path, ignore_file_names: list[str]) -> list[str]:
    """Read non-blank, non-comment lines from each ignore file that exists."""
    patterns: list[str] = []
    for name in ignore_file_names:
        path = root / name
        if not path.is_file():
            continue
        for raw_line in path.read_text(encoding="utf-8", errors="replace").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            patterns.append(line)
    return patterns


def filter_by_ignore_rules(
    diff_text: str,
    root: Path,
    ignore_file_names: list[str],
) -> IgnoreFilterResult:
    """Remove file chunks matched by ignore files or built-in sensitive globs."""
    patterns = [*read_ignore_patterns(root, ignore_file_names), *BUILTIN_SENSITIVE_GLOBS]
    spec = compile_globs(patterns)

    kept: list[str] = []
    excluded: set[str] = set()
    for chunk in split_file_chunks(diff_text):
        if chunk.file and matches(spec, chunk.file):
            excluded.add(chunk.file)
            continue
        kept.append(chunk.chunk)

    if excluded:
        logger.debug("Excluded %d file(s) by ignore rules: %s", len(excluded), sorted(excluded))
    return IgnoreFilterResult(filtered_diff="\n".join(kept), excluded_files=sorted(excluded))


def scan_for_secrets(
    diff_text: str,
    allow_patterns: list[str] | None = None,
    allow_files: list[str] | None = None,
) -> list[SecretFinding]:
    """Scan added lines for secret-like content, at most one finding per line."""
    allow_regexes = _compile_allow_patterns(allow_patterns or [])
    allow_spec = compile_globs(allow_files or [])

    findings: list[SecretFinding] = []
    current_file = UNKNOWN_FILE
    new_lineno = 1

    for raw_line in diff_text.split("\n"):
        if raw_line.startswith(DIFF_HEADER_PREFIX):
            parsed = parse_diff_header(raw_line)
            if parsed is not None:
                current_file = parsed.b_path
            continue

        hunk = HUNK_HEADER_RE.match(raw_line)
        if hunk is not None:
            new_lineno = int(hunk.group("new_start"))
            continue

        if raw_line.startswith("+") and not raw_line.startswith("+++"):
            added = raw_line[1:]
            if not _is_allowed(added, current_file, allow_regexes, allow_spec):
                detected = detect_secret(added)
                if detected is not None:
                    kind, sample = detected
                    findings.append(
                        SecretFinding(
                            file=current_file,
                            line=new_lineno,
                            kind=kind,
                            redacted_sample=redact_sample(sample),
                        )
                    )
            new_lineno += 1
            continue

        if raw_line.startswith(" "):
            new_lineno += 1

    return findings


def detect_secret(text: str) -> tuple[str, str] | None:
    """Return ``(kind, matched_text)`` for the first detector that fires."""
    for detector in _DETECTORS:
        match = detector.pattern.search(text)
        if match is not None:
            return (detector.kind, match.group(0))

    assignment = _ASSIGNMENT_RE.search(text)
    if assignment is not None:
        keyword = assignment.group("keyword").lower().replace("-", "_")
        value = assignment.group("quoted") or assignment.group("bare") or ""
        return (f"keyword:{keyword}", value)

    for candidate in _LONG_TOKEN_RE.finditer(text):
        token = candidate.group(0)
        if _has_mixed_case_and_digits(token):
            return ("long_token", token)
    return None


def redact_sample(sample: str) -> str:
    """Keep at most the first and last two characters of a matched secret."""
    compact = sample.strip()
    if len(compact) <= 6:
        return REDACTION_MASK
    return f"{compact[:2]}{REDACTION_MASK}{compact[-2:]}"


def _is_allowed(
    line: str,
    path: str,
    allow_regexes: list[re.Pattern[str]],
    allow_spec: GitIgnoreSpec | None,
) -> bool:
    if any(regex.search(line) for regex in allow_regexes):
        return True
    return matches(allow_spec, path)


def _compile_allow_patterns(patterns: list[str]) -> list[re.Pattern[str]]:
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            logger.warning("Ignoring invalid security.allow_patterns entry %r: %s", pattern, exc)
    return compiled


def _has_mixed_case_and_digits(token: str) -> bool:
    return (
        any(char.islower() for char in token)
        and any(char.isupper() for char in token)
        and any(char.isdigit() for char in token)
    )
