"""Configuration loading for diff-review."""

from __future__ import annotations

import re
import shutil
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from diff_review.backend import DEFAULT_MODEL, PROMPT_PLACEHOLDER, BackendCommand
from diff_review.diagnostics import FAIL_ON_CHOICES
from diff_review.rules import SEVERITIES

CONFIG_FILENAMES = (".diff-review.toml", "diff-review.toml")
PYPROJECT_FILENAME = "pyproject.toml"
PYPROJECT_TOOL_KEYS = ("diff_review", "diff-review")

DEFAULT_BACKEND = "claude"
DEFAULT_TIMEOUT_MS = 120000
DEFAULT_IGNORE_FILES = (".gitignore", ".cursorignore", ".diff-reviewignore")

KNOWN_BACKENDS: dict[str, BackendCommand] = {
    "claude": BackendCommand(
        name="claude",
        executable="claude",
        args=["-p", "{prompt}", "--model", "{model}", "--output-format", "text"],
        model="sonnet",
    ),
    "codex": BackendCommand(
        name="codex",
        executable="codex",
        args=["exec", "--model", "{model}", "{prompt}"],
        model="gpt-5-codex",
    ),
    "cursor": BackendCommand(
        name="cursor",
        executable="cursor-agent",
        args=["-p", "{prompt}", "--model", "{model}", "--output-format", "text"],
        model=DEFAULT_MODEL,
    ),
}


@dataclass(slots=True)
class RulesConfig:
    """Rule selection and global scoping."""

    disable: list[str] = field(default_factory=list)
    severity_overrides: dict[str, str] = field(default_factory=dict)
    include_globs: list[str] = field(default_factory=list)
    exclude_globs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "disable": list(self.disable),
            "severity_overrides": dict(self.severity_overrides),
            "include_globs": list(self.include_globs),
            "exclude_globs": list(self.exclude_globs),
        }


@dataclass(slots=True)
class SecurityConfig:
    """Secret guard settings."""

    secret_guard: bool = True
    allow_patterns: list[str] = field(default_factory=list)
    ignore_files: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_FILES))
    allow_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "secret_guard": self.secret_guard,
            "allow_patterns": list(self.allow_patterns),
            "ignore_files": list(self.ignore_files),
            "allow_files": list(self.allow_files),
        }


@dataclass(slots=True)
class BackendConfig:
    """One configured backend command template."""

    executable: str
    args: list[str]
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"executable": self.executable, "args": list(self.args), "model": self.model}


@dataclass(slots=True)
class AppConfig:
    """Runtime configuration values resolved from project files."""

    backend: str = DEFAULT_BACKEND
    model: str | None = None
    format: str = "human"
    fail_on: str = "error"
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    batch: bool = False
    base: str = "origin/main"
    head: str = "HEAD"
    rules: RulesConfig = field(default_factory=RulesConfig)
    backends: dict[str, BackendConfig] = field(default_factory=dict)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "model": self.model,
            "format": self.format,
            "fail_on": self.fail_on,
            "budgets": {"timeout_ms": self.timeout_ms},
            "execution": {"batch": self.batch},
            "base": self.base,
            "head": self.head,
            "rules": self.rules.to_dict(),
            "backends": {name: item.to_dict() for name, item in sorted(self.backends.items())},
            "security": self.security.to_dict(),
            "source": self.source,
        }


def load_app_config(repo: Path, config_path: Path | None = None) -> AppConfig:
    """Load config from explicit path or repository-local files with precedence."""
    repo = repo.resolve()
    if config_path is not None:
        resolved = config_path if config_path.is_absolute() else (repo / config_path)
        if not resolved.exists():
            raise ValueError(f"Config file does not exist: {resolved}")
        mapping = _extract_config_mapping(_load_toml(resolved), source_path=resolved)
        return _from_mapping(mapping, source=str(resolved))

    for filename in CONFIG_FILENAMES:
        resolved = repo / filename
        if resolved.exists():
            mapping = _extract_config_mapping(_load_toml(resolved), source_path=resolved)
            return _from_mapping(mapping, source=str(resolved))

    pyproject_path = repo / PYPROJECT_FILENAME
    if pyproject_path.exists():
        mapping = _extract_config_mapping(_load_toml(pyproject_path), source_path=pyproject_path)
        if mapping:
            return _from_mapping(mapping, source=str(pyproject_path))

    return AppConfig()


def resolve_backend(
    config: AppConfig,
    *,
    backend_override: str | None = None,
    model_override: str | None = None,
) -> BackendCommand:
    """Pick the backend command for this run.

    Configured backends take precedence over the built-in templates for the
    same name. Model precedence: override, backend model, global model.
    """
    name = backend_override or config.backend
    configured = config.backends.get(name)
    if configured is not None:
        executable = configured.executable
        args = list(configured.args)
        backend_model = configured.model
    elif name in KNOWN_BACKENDS:
        builtin = KNOWN_BACKENDS[name]
        executable = builtin.executable
        args = list(builtin.args)
        backend_model = builtin.model
    else:
        raise ValueError(
            f'Backend "{name}" is not configured. Add it under [backends.{name}] with '
            f'executable and args (including "{PROMPT_PLACEHOLDER}").'
        )

    model = model_override or backend_model or config.model or DEFAULT_MODEL
    return BackendCommand(name=name, executable=executable, args=args, model=model)


def detect_backend() -> str:
    """Return the first known agent CLI found on PATH."""
    for name, command in KNOWN_BACKENDS.items():
        if shutil.which(command.executable):
            return name
    return DEFAULT_BACKEND


def default_config_template(backend: str = DEFAULT_BACKEND) -> str:
    """Return a starter config template."""
    command = KNOWN_BACKENDS.get(backend, KNOWN_BACKENDS[DEFAULT_BACKEND])
    args = ", ".join(f'"{arg}"' for arg in command.args)
    return "\n".join(
        [
            f'backend = "{command.name}"',
            'format = "human"',
            'fail_on = "error"',
            "",
            "[budgets]",
            f"timeout_ms = {DEFAULT_TIMEOUT_MS}",
            "",
            "[execution]",
            "batch = false",
            "",
            "[rules]",
            "disable = []",
            'include_globs = ["src/**"]',
            'exclude_globs = ["**/*.test.*", "**/*.spec.*"]',
            "",
            "[rules.severity_overrides]",
            '# EXAMPLE_RULE_001 = "warn"',
            "",
            f"[backends.{command.name}]",
            f'executable = "{command.executable}"',
            f"args = [{args}]",
            f'model = "{command.model}"',
            "",
            "[security]",
            "secret_guard = true",
            "allow_patterns = []",
            "ignore_files = [" + ", ".join(f'"{item}"' for item in DEFAULT_IGNORE_FILES) + "]",
            "allow_files = []",
            "",
        ]
    )


def _load_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as file_obj:
            loaded = tomllib.load(file_obj)
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Invalid TOML in {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _extract_config_mapping(loaded: dict[str, Any], *, source_path: Path) -> dict[str, Any]:
    if source_path.name == PYPROJECT_FILENAME:
        section = _find_pyproject_tool_section(loaded)
        return section if section is not None else {}

    tool_section = _find_pyproject_tool_section(loaded)
    if tool_section is not None:
        return tool_section
    return loaded


def _find_pyproject_tool_section(loaded: dict[str, Any]) -> dict[str, Any] | None:
    tool = loaded.get("tool")
    if not isinstance(tool, dict):
        return None
    for key in PYPROJECT_TOOL_KEYS:
        section = tool.get(key)
        if isinstance(section, dict):
            return section
    return None


def _from_mapping(mapping: dict[str, Any], *, source: str) -> AppConfig:
    budgets = _as_table(mapping.get("budgets"), "budgets")
    execution = _as_table(mapping.get("execution"), "execution")
    rules_mapping = _as_table(mapping.get("rules"), "rules")
    backends_mapping = _as_table(mapping.get("backends"), "backends")
    security_mapping = _as_table(mapping.get("security"), "security")

    timeout_ms = _as_int(budgets.get("timeout_ms", DEFAULT_TIMEOUT_MS), "budgets.timeout_ms")
    if timeout_ms <= 0:
        raise ValueError("budgets.timeout_ms must be > 0")

    return AppConfig(
        backend=_as_str(mapping.get("backend", DEFAULT_BACKEND), "backend").strip(),
        model=_as_optional_str(mapping.get("model"), "model"),
        format=_as_choice(mapping.get("format", "human"), {"human", "json"}, "format"),
        fail_on=_as_choice(mapping.get("fail_on", "error"), set(FAIL_ON_CHOICES), "fail_on"),
        timeout_ms=timeout_ms,
        batch=_as_bool(execution.get("batch", False), "execution.batch"),
        base=_as_str(mapping.get("base", "origin/main"), "base"),
        head=_as_str(mapping.get("head", "HEAD"), "head"),
        rules=_parse_rules_config(rules_mapping),
        backends=_parse_backends(backends_mapping),
        security=_parse_security_config(security_mapping),
        source=source,
    )


def _parse_rules_config(value: dict[str, Any]) -> RulesConfig:
    overrides = _as_table(value.get("severity_overrides"), "rules.severity_overrides")
    parsed_overrides: dict[str, str] = {}
    for rule_id, severity in overrides.items():
        parsed_overrides[rule_id] = _as_choice(
            severity, set(SEVERITIES), f"rules.severity_overrides.{rule_id}"
        )
    return RulesConfig(
        disable=_as_str_list(value.get("disable"), "rules.disable"),
        severity_overrides=parsed_overrides,
        include_globs=_as_glob_list(value.get("include_globs"), "rules.include_globs"),
        exclude_globs=_as_glob_list(value.get("exclude_globs"), "rules.exclude_globs"),
    )


def _parse_backends(value: dict[str, Any]) -> dict[str, BackendConfig]:
    parsed: dict[str, BackendConfig] = {}
    for name, raw in value.items():
        table = _as_table(raw, f"backends.{name}")
        executable = _as_str(table.get("executable"), f"backends.{name}.executable").strip()
        if not executable:
            raise ValueError(f"backends.{name}.executable must be a non-empty string")
        args = _as_str_list(table.get("args"), f"backends.{name}.args")
        if PROMPT_PLACEHOLDER not in args:
            raise ValueError(f'backends.{name}.args must include "{PROMPT_PLACEHOLDER}"')
        parsed[name] = BackendConfig(
            executable=executable,
            args=args,
            model=_as_optional_str(table.get("model"), f"backends.{name}.model"),
        )
    return parsed


def _parse_security_config(value: dict[str, Any]) -> SecurityConfig:
    allow_patterns = _as_glob_list(value.get("allow_patterns"), "security.allow_patterns")
    for pattern in allow_patterns:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ValueError(f"security.allow_patterns has an invalid regex {pattern!r}: {exc}") from exc

    ignore_files = _as_glob_list(value.get("ignore_files"), "security.ignore_files")
    return SecurityConfig(
        secret_guard=_as_bool(value.get("secret_guard", True), "security.secret_guard"),
        allow_patterns=allow_patterns,
        ignore_files=ignore_files or list(DEFAULT_IGNORE_FILES),
        allow_files=_as_glob_list(value.get("allow_files"), "security.allow_files"),
    )


def _as_table(value: Any, field_name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be a table/object")
    return value


def _as_str_list(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise ValueError(f"{field_name} must be a list of strings")
    return list(value)


def _as_glob_list(value: Any, field_name: str) -> list[str]:
    return [item.strip() for item in _as_str_list(value, field_name) if item.strip()]


def _as_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    return value


def _as_optional_str(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, field_name).strip() or None


def _as_choice(raw: Any, allowed: set[str], field_name: str) -> str:
    value = str(raw).lower()
    if value not in allowed:
        choices = ", ".join(sorted(allowed))
        raise ValueError(f"{field_name} must be one of: {choices}")
    return value


def _as_int(raw: Any, field_name: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValueError(f"{field_name} must be an integer")
    return raw


def _as_bool(raw: Any, field_name: str) -> bool:
    if not isinstance(raw, bool):
        raise ValueError(f"{field_name} must be a boolean")
    return raw
