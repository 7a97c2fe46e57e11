"""Tests for backend command execution, output parsing and retries."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from diff_review.backend import (
    BackendCommand,
    BackendError,
    BackendNotFoundError,
    BackendOutputError,
    BackendTimeoutError,
    CommandBackend,
    extract_first_json_object,
    interpolate_args,
    parse_backend_output,
)
from diff_review.prompts import STRICT_JSON_RETRY_INSTRUCTION
from tests.helpers_backend import script_command, write_backend_script

COUNTING_PREAMBLE = """
counter = Path(__file__).with_suffix(".count")
calls = int(counter.read_text()) + 1 if counter.exists() else 1
counter.write_text(str(calls))
"""


def _calls(script: Path) -> int:
    counter = script.with_suffix(".count")
    return int(counter.read_text()) if counter.exists() else 0


def test_interpolate_args_replaces_exact_tokens_only() -> None:
    args = ["-p", "{prompt}", "--model", "{model}", "prefix-{prompt}"]
    assert interpolate_args(args, "PROMPT", "m1") == [
        "-p",
        "PROMPT",
        "--model",
        "m1",
        "prefix-{prompt}",
    ]


def test_extract_first_json_object_skips_prose_and_respects_strings() -> None:
    raw = 'Sure! Here you go:\n```json\n{"diagnostics": [{"message": "brace } in \\"text\\""}]}\n```\n{"second": 1}'
    extracted = extract_first_json_object(raw)
    assert extracted is not None
    assert json.loads(extracted) == {"diagnostics": [{"message": 'brace } in "text"'}]}


def test_extract_first_json_object_returns_none_when_unbalanced() -> None:
    assert extract_first_json_object('{"diagnostics": [') is None
    assert extract_first_json_object("no braces here") is None


def test_parse_backend_output_accepts_plain_and_wrapped_json() -> None:
    assert parse_backend_output('{"diagnostics": []}') == []
    assert parse_backend_output('noise {"diagnostics": [{"a": 1}]} trailer') == [{"a": 1}]


@pytest.mark.parametrize(
    "raw",
    ["", "not json", "[1, 2]", '{"results": []}', '{"diagnostics": {}}'],
)
def test_parse_backend_output_rejects_wrong_shapes(raw: str) -> None:
    with pytest.raises(BackendOutputError):
        parse_backend_output(raw)


def test_command_backend_returns_diagnostics_on_first_attempt(tmp_path: Path) -> None:
    script = write_backend_script(
        tmp_path,
        COUNTING_PREAMBLE
        + """
print(json.dumps({"diagnostics": [{"rule_id": "R1", "prompt_len": len(prompt)}]}))
""",
    )
    backend = CommandBackend(script_command(script), interactive=False)

    result = asyncio.run(backend.run_prompt("Rule R1", "review this", 5000))

    assert result == [{"rule_id": "R1", "prompt_len": len("review this")}]
    assert _calls(script) == 1


def test_command_backend_passes_model_placeholder(tmp_path: Path) -> None:
    script = write_backend_script(
        tmp_path,
        """
print(json.dumps({"diagnostics": [{"model": sys.argv[2]}]}))
""",
    )
    command = BackendCommand(
        name="fake",
        executable=script_command(script).executable,
        args=[str(script), "{prompt}", "{model}"],
        model="tiny-model",
    )

    result = asyncio.run(CommandBackend(command, interactive=False).run_prompt("x", "p", 5000))

    assert result == [{"model": "tiny-model"}]


def test_command_backend_retries_with_strict_json_instruction(tmp_path: Path) -> None:
    script = write_backend_script(
        tmp_path,
        COUNTING_PREAMBLE
        + f"""
if {STRICT_JSON_RETRY_INSTRUCTION!r} in prompt:
    print(json.dumps({{"diagnostics": [{{"retried": True}}]}}))
else:
    print("I think the code looks fine!")
""",
    )
    backend = CommandBackend(script_command(script), interactive=False)

    result = asyncio.run(backend.run_prompt("Rule R1", "review this", 5000))

    assert result == [{"retried": True}]
    assert _calls(script) == 2


def test_command_backend_fails_after_primary_and_retry(tmp_path: Path) -> None:
    script = write_backend_script(
        tmp_path,
        COUNTING_PREAMBLE
        + """
sys.stderr.write("boom\\n")
sys.exit(3)
""",
    )
    backend = CommandBackend(script_command(script), interactive=False)

    with pytest.raises(BackendError, match="boom"):
        asyncio.run(backend.run_prompt("Rule R1", "review this", 5000))
    assert _calls(script) == 2


def test_command_backend_times_out_each_attempt(tmp_path: Path) -> None:
    script = write_backend_script(
        tmp_path,
        COUNTING_PREAMBLE
        + """
import time
time.sleep(10)
""",
    )
    backend = CommandBackend(script_command(script), interactive=False)

    with pytest.raises(BackendTimeoutError):
        asyncio.run(backend.run_prompt("Rule R1", "review this", 1500))
    assert _calls(script) == 2


def test_command_backend_missing_executable_skips_interactive_recovery(tmp_path: Path) -> None:
    command = BackendCommand(
        name="ghost", executable=str(tmp_path / "does-not-exist"), args=["{prompt}"]
    )
    backend = CommandBackend(command, interactive=True)

    with pytest.raises(BackendNotFoundError):
        asyncio.run(backend.run_prompt("Rule R1", "review this", 1000))


def test_command_backend_interactive_recovery_then_machine_retry(tmp_path: Path) -> None:
    script = write_backend_script(
        tmp_path,
        COUNTING_PREAMBLE
        + """
if calls <= 2:
    sys.exit(1)
print(json.dumps({"diagnostics": [{"attempt": calls}]}))
""",
    )
    backend = CommandBackend(script_command(script), interactive=True)

    result = asyncio.run(backend.run_prompt("Rule R1", "review this", 5000))

    # primary, strict retry, interactive passthrough, final machine attempt
    assert result == [{"attempt": 4}]
    assert _calls(script) == 4


def test_command_backend_interactive_recovery_runs_once(tmp_path: Path) -> None:
    script = write_backend_script(
        tmp_path,
        COUNTING_PREAMBLE
        + """
sys.exit(1)
""",
    )
    backend = CommandBackend(script_command(script), interactive=True)

    with pytest.raises(BackendError):
        asyncio.run(backend.run_prompt("Rule R1", "review this", 5000))
    assert _calls(script) == 3


def test_command_backend_shares_interactive_recovery_across_concurrent_prompts(
    tmp_path: Path,
) -> None:
    script = write_backend_script(
        tmp_path,
        """
with Path(__file__).with_suffix(".log").open("a", encoding="utf-8") as handle:
    handle.write("call\\n")
sys.exit(1)
""",
    )
    backend = CommandBackend(script_command(script), interactive=True)

    async def run_both() -> list[object]:
        return await asyncio.gather(
            backend.run_prompt("Rule R1", "review one", 5000),
            backend.run_prompt("Rule R2", "review two", 5000),
            return_exceptions=True,
        )

    results = asyncio.run(run_both())

    assert all(isinstance(item, BackendError) for item in results)
    # two primaries, two strict retries, a single terminal passthrough
    log_lines = script.with_suffix(".log").read_text(encoding="utf-8").splitlines()
    assert len(log_lines) == 5
