"""External analysis backend invocation.

A backend is any command-line tool that accepts a prompt as an argument
and prints ``{"diagnostics": [...]}`` on stdout. Each call walks a small
state machine::

    PRIMARY --fail--> STRICT_RETRY --fail--> INTERACTIVE_RECOVERY --fail--> FAILED
                                   \\--fail (no tty / not found)--------------^

Any success returns immediately. Every machine-mode attempt gets its own
timeout window. The terminal passthrough runs at most once per backend,
even when several rules fail concurrently.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from diff_review.prompts import with_strict_json_retry

logger = logging.getLogger(__name__)

PROMPT_PLACEHOLDER = "{prompt}"
MODEL_PLACEHOLDER = "{model}"
DEFAULT_MODEL = "auto"


class BackendError(RuntimeError):
    """Raised when a backend call fails."""


class BackendNotFoundError(BackendError):
    """Raised when the backend executable cannot be found."""


class BackendTimeoutError(BackendError):
    """Raised when a backend attempt exceeds its timeout."""


class BackendOutputError(BackendError):
    """Raised when backend stdout does not hold a diagnostics object."""


class AttemptState(Enum):
    PRIMARY = "primary"
    STRICT_RETRY = "strict_retry"
    INTERACTIVE_RECOVERY = "interactive_recovery"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class BackendCommand:
    """Resolved backend command template."""

    name: str
    executable: str
    args: list[str] = field(default_factory=list)
    model: str = DEFAULT_MODEL


@dataclass(frozen=True, slots=True)
class CommandResult:
    stdout: str
    stderr: str
    elapsed_ms: int


def interpolate_args(args: list[str], prompt: str, model: str) -> list[str]:
    """Substitute the exact ``{prompt}`` and ``{model}`` tokens."""
    resolved: list[str] = []
    for arg in args:
        if arg == PROMPT_PLACEHOLDER:
            resolved.append(prompt)
        elif arg == MODEL_PLACEHOLDER:
            resolved.append(model)
        else:
            resolved.append(arg)
    return resolved


async def run_command(executable: str, args: list[str], timeout_ms: int) -> CommandResult:
    """Run a backend command with captured output, killing it on timeout."""
    started = time.perf_counter()
    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise BackendNotFoundError(f"Backend executable not found: {executable}") from exc
    except OSError as exc:
        raise BackendError(f"Failed to launch backend {executable}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_ms / 1000)
    except TimeoutError as exc:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise BackendTimeoutError(f"Backend timed out after {timeout_ms}ms") from exc

    stderr_text = stderr.decode("utf-8", errors="replace")
    if process.returncode != 0:
        detail = stderr_text.strip() or "(empty)"
        raise BackendError(
            f"Backend command failed with code {process.returncode}. stderr: {detail}"
        )

    return CommandResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr_text,
        elapsed_ms=int((time.perf_counter() - started) * 1000),
    )


async def run_interactive(executable: str, args: list[str]) -> None:
    """Run a backend attached to the terminal so it can finish one-time setup."""
    try:
        process = await asyncio.create_subprocess_exec(executable, *args)
    except FileNotFoundError as exc:
        raise BackendNotFoundError(f"Backend executable not found: {executable}") from exc
    except OSError as exc:
        raise BackendError(f"Failed to launch backend {executable}: {exc}") from exc

    code = await process.wait()
    if code != 0:
        raise BackendError(f"Interactive backend command failed with code {code}")


def extract_first_json_object(raw: str) -> str | None:
    """Return the first balanced top-level ``{...}`` in text, or ``None``."""
    start = -1
    depth = 0
    in_string = False
    escaped = False

    for index, char in enumerate(raw):
        if start == -1:
            if char == "{":
                start = index
                depth = 1
            continue

        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return raw[start : index + 1]

    return None


def parse_backend_output(raw: str) -> list[Any]:
    """Decode backend stdout into the raw (unvalidated) diagnostics list."""
    candidate = raw.strip()
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        extracted = extract_first_json_object(candidate)
        if extracted is None:
            raise BackendOutputError(
                f"Backend output is not valid JSON: {candidate[:200]}"
            ) from None
        try:
            parsed = json.loads(extracted)
        except json.JSONDecodeError as exc:
            raise BackendOutputError(f"Backend output is not valid JSON: {exc}") from exc

    if not isinstance(parsed, dict):
        raise BackendOutputError("Backend output JSON root must be an object")
    diagnostics = parsed.get("diagnostics")
    if not isinstance(diagnostics, list):
        raise BackendOutputError("Backend output must contain a diagnostics array")
    return diagnostics


def stdio_is_interactive() -> bool:
    return sys.stdin.isatty() and sys.stdout.isatty() and sys.stderr.isatty()


class CommandBackend:
    """Runs prompts through a configured command with retry and recovery."""

    def __init__(self, command: BackendCommand, *, interactive: bool | None = None) -> None:
        self.command = command
        self._interactive = interactive
        # One terminal passthrough per backend, shared by concurrent rules.
        self._recovery_lock = asyncio.Lock()
        self._recovered = False
        self._recovery_error: BackendError | None = None

    @property
    def name(self) -> str:
        return self.command.name

    async def run_prompt(self, label: str, prompt: str, timeout_ms: int) -> list[Any]:
        """Return raw diagnostics for a prompt or raise the last failure."""
        machine_args = interpolate_args(self.command.args, prompt, self.command.model)
        state = AttemptState.PRIMARY
        last_error: BackendError | None = None
        not_found = False

        while True:
            if state is AttemptState.PRIMARY:
                try:
                    return await self._attempt(label, 1, prompt, machine_args, timeout_ms)
                except BackendError as exc:
                    last_error = exc
                    not_found = isinstance(exc, BackendNotFoundError)
                    state = AttemptState.STRICT_RETRY

            elif state is AttemptState.STRICT_RETRY:
                retry_prompt = with_strict_json_retry(prompt)
                retry_args = interpolate_args(self.command.args, retry_prompt, self.command.model)
                try:
                    return await self._attempt(label, 2, retry_prompt, retry_args, timeout_ms)
                except BackendError as exc:
                    last_error = exc
                    not_found = not_found or isinstance(exc, BackendNotFoundError)
                    if not not_found and self._can_recover_interactively():
                        state = AttemptState.INTERACTIVE_RECOVERY
                    else:
                        state = AttemptState.FAILED

            elif state is AttemptState.INTERACTIVE_RECOVERY:
                try:
                    await self._recover_interactively(label, machine_args)
                    return await self._attempt(label, 3, prompt, machine_args, timeout_ms)
                except BackendError as exc:
                    last_error = exc
                    logger.debug("%s: interactive recovery failed (%s)", label, exc)
                    state = AttemptState.FAILED

            else:
                assert last_error is not None
                raise last_error

    async def _attempt(
        self,
        label: str,
        number: int,
        prompt: str,
        args: list[str],
        timeout_ms: int,
    ) -> list[Any]:
        printable = [self.command.executable] + [
            "<prompt-redacted>" if arg == prompt else arg for arg in args
        ]
        logger.debug(
            "%s attempt %d (timeout %dms): %s", label, number, timeout_ms, " ".join(printable)
        )
        try:
            result = await run_command(self.command.executable, args, timeout_ms)
            diagnostics = parse_backend_output(result.stdout)
        except BackendError as exc:
            logger.debug("%s attempt %d failed: %s", label, number, exc)
            raise
        logger.debug("%s attempt %d completed in %dms", label, number, result.elapsed_ms)
        return diagnostics

    async def _recover_interactively(self, label: str, args: list[str]) -> None:
        async with self._recovery_lock:
            if self._recovery_error is not None:
                raise BackendError(f"Interactive recovery already failed: {self._recovery_error}")
            if self._recovered:
                logger.debug("%s: interactive setup already completed, retrying", label)
                return
            logger.warning(
                "%s: backend may need interactive setup; running %s attached to the terminal once",
                label,
                self.command.executable,
            )
            try:
                await run_interactive(self.command.executable, args)
            except BackendError as exc:
                self._recovery_error = exc
                raise
            self._recovered = True

    def _can_recover_interactively(self) -> bool:
        if self._interactive is not None:
            return self._interactive
        return stdio_is_interactive()
