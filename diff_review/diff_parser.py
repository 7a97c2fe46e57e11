"""Unified diff splitting primitives."""

from __future__ import annotations

from dataclasses import dataclass
from re import Match, compile

DIFF_HEADER_PREFIX = "diff --git "
DEV_NULL = "/dev/null"

DIFF_HEADER_RE = compile(
    r'^diff --git (?:"a/(?P<a_quoted>(?:[^"\\]|\\.)+)"|a/(?P<a_plain>\S+)) '
    r'(?:"b/(?P<b_quoted>(?:[^"\\]|\\.)+)"|b/(?P<b_plain>\S+))$'
)
HUNK_HEADER_RE = compile(r"^@@ -\d+(?:,\d+)? \+(?P<new_start>\d+)(?:,\d+)? @@")


@dataclass(frozen=True, slots=True)
class DiffPaths:
    """Old/new paths parsed from a ``diff --git`` header."""

    a_path: str
    b_path: str


@dataclass(frozen=True, slots=True)
class FileChunk:
    """Verbatim diff text belonging to one file.

    ``file`` is the new-side path, or an empty string for text that
    precedes the first header or follows an unparseable one.
    """

    file: str
    chunk: str


def parse_diff_header(line: str) -> DiffPaths | None:
    """Parse a ``diff --git`` header line, returning ``None`` when malformed."""
    match: Match[str] | None = DIFF_HEADER_RE.match(line)
    if match is None:
        return None
    a_raw = match.group("a_quoted") or match.group("a_plain")
    b_raw = match.group("b_quoted") or match.group("b_plain")
    if not a_raw or not b_raw:
        return None
    return DiffPaths(
        a_path=_unquote(a_raw, quoted=match.group("a_quoted") is not None),
        b_path=_unquote(b_raw, quoted=match.group("b_quoted") is not None),
    )


def split_file_chunks(diff_text: str) -> list[FileChunk]:
    """Split diff text into per-file chunks.

    Joining the ``chunk`` values with ``"\\n"`` reproduces the input. A
    header that cannot be parsed stays inside the surrounding chunk.
    """
    chunks: list[FileChunk] = []
    current_lines: list[str] = []
    current_file = ""

    def flush() -> None:
        nonlocal current_lines, current_file
        if current_lines:
            chunks.append(FileChunk(file=current_file, chunk="\n".join(current_lines)))
        current_lines = []
        current_file = ""

    for raw_line in diff_text.split("\n"):
        if raw_line.startswith(DIFF_HEADER_PREFIX):
            parsed = parse_diff_header(raw_line)
            if parsed is not None:
                flush()
                current_file = parsed.b_path
        current_lines.append(raw_line)

    flush()
    return chunks


def changed_files_from_diff(diff_text: str) -> list[str]:
    """Return unique new-side paths in first-seen order, skipping deletions."""
    seen: dict[str, None] = {}
    for raw_line in diff_text.split("\n"):
        if not raw_line.startswith(DIFF_HEADER_PREFIX):
            continue
        parsed = parse_diff_header(raw_line)
        if parsed is None or parsed.b_path == DEV_NULL:
            continue
        seen.setdefault(parsed.b_path, None)
    return list(seen)


def join_chunks(chunks: list[FileChunk]) -> str:
    return "\n".join(chunk.chunk for chunk in chunks)


def _unquote(raw: str, *, quoted: bool) -> str:
    if not quoted:
        return raw
    return raw.replace('\\"', '"').replace("\\\\", "\\")
