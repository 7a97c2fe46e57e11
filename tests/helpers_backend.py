"""Fake backends for dispatch and CLI tests."""

from __future__ import annotations

import json
import sys
import textwrap
from pathlib import Path
from typing import Any

from diff_review.backend import BackendCommand, BackendError


def write_backend_script(tmp_path: Path, body: str, name: str = "fake_backend.py") -> Path:
    """Write a python script that receives the prompt as ``sys.argv[1]``."""
    script = tmp_path / name
    script.write_text(
        "import json\nimport sys\nfrom pathlib import Path\n\nprompt = sys.argv[1]\n"
        + textwrap.dedent(body),
        encoding="utf-8",
    )
    return script


def script_command(script: Path, name: str = "fake") -> BackendCommand:
    return BackendCommand(name=name, executable=sys.executable, args=[str(script), "{prompt}"])


def backend_config_toml(script: Path, name: str = "fake") -> str:
    """Config TOML that points backend ``name`` at a fake script."""
    executable = json.dumps(sys.executable)
    script_arg = json.dumps(str(script))
    return "\n".join(
        [
            f'backend = "{name}"',
            "",
            f"[backends.{name}]",
            f"executable = {executable}",
            f'args = [{script_arg}, "{{prompt}}"]',
            "",
        ]
    )


class FakeBackend:
    """In-process backend returning canned responses keyed by label."""

    def __init__(
        self,
        responses: dict[str, list[Any]] | None = None,
        failures: set[str] | None = None,
    ) -> None:
        self.responses = responses or {}
        self.failures = failures or set()
        self.calls: list[tuple[str, str]] = []

    async def run_prompt(self, label: str, prompt: str, timeout_ms: int) -> list[Any]:
        self.calls.append((label, prompt))
        if label in self.failures:
            raise BackendError(f"{label} failed")
        return list(self.responses.get(label, []))
