"""CLI entrypoint for diff-review."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Annotated

import click
import typer

from diff_review import __version__
from diff_review.backend import CommandBackend, stdio_is_interactive
from diff_review.config import (
    AppConfig,
    default_config_template,
    detect_backend,
    load_app_config,
    resolve_backend,
)
from diff_review.diagnostics import FAIL_ON_CHOICES
from diff_review.git import GitError, get_diff_between, get_local_diff, get_repo_root
from diff_review.logging_config import configure_logging
from diff_review.output import (
    render_diff_preview,
    render_human,
    render_json,
    render_secret_block,
)
from diff_review.pipeline import PreparedReview, ReviewStatus, execute_review, prepare_review
from diff_review.rules import (
    DEFAULT_RULES_DIR,
    EXAMPLE_RULE_ID,
    Rule,
    RuleLoadError,
    example_rule_template,
    load_rules,
)

logger = logging.getLogger(__name__)

SECURITY_GUIDE = "\n".join(
    [
        "diff-review security guide",
        "",
        "diff-review applies security controls before any backend runs:",
        "- It filters diff paths using ignore files and built-in sensitive globs.",
        "- It scans added lines for high-signal secret patterns.",
        "- It blocks backend execution when potential secrets are found.",
        "",
        "Your responsibilities:",
        "- Keep .gitignore, .cursorignore, .diff-reviewignore (and [security].ignore_files) up to date.",
        "- Tune [security].allow_patterns and [security].allow_files only for known-safe cases.",
        "- Review the native access and security policy of your agent CLI.",
    ]
)

app = typer.Typer(
    name="diff-review",
    no_args_is_help=True,
    help="Review git diffs with rule-driven prompts sent to an agent CLI.",
)


def version_callback(value: bool) -> None:
    """Print version and exit when --version is provided."""
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option("--version", help="Show version and exit.", callback=version_callback),
    ] = False,
) -> None:
    """Root command callback."""
    _ = version


@app.command("check")
def check_command(
    repo: Annotated[Path, typer.Option(help="Repository path.")] = Path("."),
    diff_file: Annotated[Path | None, typer.Option(help="Path to unified diff file.")] = None,
    stdin: Annotated[bool, typer.Option(help="Read unified diff from stdin.")] = False,
    base: Annotated[str | None, typer.Option(help="Base git revision.")] = None,
    head: Annotated[str | None, typer.Option(help="Head git revision.")] = None,
    backend: Annotated[str | None, typer.Option(help="Backend name to run.")] = None,
    model: Annotated[str | None, typer.Option(help="Model passed to the backend.")] = None,
    format: Annotated[
        str | None, typer.Option(help="Output format: human|json.", show_default="human")
    ] = None,
    fail_on: Annotated[
        str | None,
        typer.Option("--fail-on", help="Blocking threshold: error|warn|never.", show_default="error"),
    ] = None,
    batch: Annotated[
        bool | None,
        typer.Option("--batch/--no-batch", help="Run all rules in one backend call."),
    ] = None,
    rules_dir: Annotated[
        Path | None,
        typer.Option("--rules-dir", help="Directory holding rule JSON files."),
    ] = None,
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Path to config TOML file."),
    ] = None,
    yes: Annotated[
        bool, typer.Option("--yes", "-y", help="Send the diff without asking for confirmation.")
    ] = False,
    debug: Annotated[bool, typer.Option(help="Log debug details to stderr.")] = False,
) -> None:
    """Review a diff and report diagnostics."""
    configure_logging(debug)

    if diff_file and stdin:
        raise typer.BadParameter("Use either --diff-file or --stdin, not both.")
    if (base is None) ^ (head is None):
        raise typer.BadParameter("Provide both --base and --head together.")

    app_config = _apply_overrides(
        _load_config_or_raise(repo, config_file),
        format=format,
        fail_on=fail_on,
        batch=batch,
    )
    root = _resolve_root(repo)
    rules = _load_rules_or_raise(rules_dir or root / DEFAULT_RULES_DIR, app_config)
    logger.debug("Loaded %d rule(s): %s", len(rules), ", ".join(rule.id for rule in rules))

    raw_diff = _read_diff_or_raise(
        diff_file=diff_file, stdin=stdin, repo=repo, base=base, head=head
    )
    prepared = prepare_review(raw_diff, rules, app_config, root)
    if prepared.blocked_by_secrets:
        typer.echo(render_secret_block(prepared.secret_findings), err=True)
        raise typer.Exit(code=ReviewStatus.SECRETS_BLOCKED.exit_code)

    if not _confirm_preview(prepared, auto_accept=yes, output_format=app_config.format):
        typer.echo("Aborted.", err=True)
        raise typer.Exit(code=ReviewStatus.ABORTED.exit_code)

    command = None
    if prepared.runnable_rules:
        try:
            command = resolve_backend(app_config, backend_override=backend, model_override=model)
        except ValueError as exc:
            raise typer.BadParameter(str(exc), param_hint="--backend") from exc

    if app_config.format == "human" and command is not None:
        typer.echo(click.style("Running rules:", bold=True))
        for rule in prepared.runnable_rules:
            typer.echo(f"  {click.style(rule.id, fg='cyan')} {rule.title}")
        mode = "batch" if app_config.batch else "parallel"
        typer.echo(
            f"Analyzing {len(prepared.changed_files)} file(s) with {command.name} in {mode} mode...\n"
        )

    runner = CommandBackend(command) if command is not None else None
    outcome = asyncio.run(execute_review(prepared, runner, app_config, resolve_root=root))

    if app_config.format == "json":
        typer.echo(render_json(outcome.diagnostics, outcome.stats))
    else:
        typer.echo(render_human(outcome.diagnostics, outcome.stats))

    raise typer.Exit(code=outcome.status.exit_code)


@app.command("rules")
def rules_command(
    repo: Annotated[Path, typer.Option(help="Repository path.")] = Path("."),
    rules_dir: Annotated[
        Path | None,
        typer.Option("--rules-dir", help="Directory holding rule JSON files."),
    ] = None,
    format: Annotated[str, typer.Option(help="Output format: human|json.")] = "human",
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Path to config TOML file."),
    ] = None,
) -> None:
    """List rules with their effective severity."""
    output_format = _format_or_raise(format)
    app_config = _load_config_or_raise(repo, config_file)
    directory = rules_dir or _resolve_root(repo) / DEFAULT_RULES_DIR
    try:
        all_rules = load_rules(directory, severity_overrides=app_config.rules.severity_overrides)
    except RuleLoadError as exc:
        raise typer.BadParameter(str(exc), param_hint="rules") from exc
    disabled = set(app_config.rules.disable)

    if output_format == "json":
        payload = {
            "rules": [
                {
                    "id": rule.id,
                    "title": rule.title,
                    "severity": rule.effective_severity,
                    "enabled": rule.id not in disabled,
                }
                for rule in all_rules
            ],
            "meta": {"rules_dir": str(directory), "config_source": app_config.source},
        }
        typer.echo(json.dumps(payload, sort_keys=True))
        return

    if not all_rules:
        typer.echo(f"No rules found in {directory}")
        return
    lines = ["Available rules:"]
    for rule in all_rules:
        status = "disabled" if rule.id in disabled else "enabled"
        lines.append(f"- {rule.id} [{status}] ({rule.effective_severity}) - {rule.title}")
    typer.echo("\n".join(lines))


@app.command("config")
def config_command(
    repo: Annotated[Path, typer.Option(help="Repository path.")] = Path("."),
    format: Annotated[str, typer.Option(help="Output format: human|json.")] = "human",
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Path to config TOML file."),
    ] = None,
) -> None:
    """Show resolved configuration."""
    output_format = _format_or_raise(format)
    app_config = _load_config_or_raise(repo, config_file)
    payload = app_config.to_dict()

    if output_format == "json":
        typer.echo(json.dumps(payload, sort_keys=True))
        return

    lines = [
        "Resolved configuration:",
        f"- source: {payload['source'] or 'defaults'}",
        f"- backend: {payload['backend']}",
        f"- model: {payload['model'] or 'backend default'}",
        f"- format: {payload['format']}",
        f"- fail_on: {payload['fail_on']}",
        f"- timeout_ms: {payload['budgets']['timeout_ms']}",
        f"- batch: {payload['execution']['batch']}",
        f"- rules.disable: {payload['rules']['disable']}",
        f"- rules.include_globs: {payload['rules']['include_globs']}",
        f"- rules.exclude_globs: {payload['rules']['exclude_globs']}",
        f"- security.secret_guard: {payload['security']['secret_guard']}",
        f"- security.ignore_files: {payload['security']['ignore_files']}",
    ]
    typer.echo("\n".join(lines))


@app.command("config-init")
def config_init_command(
    out: Annotated[Path, typer.Option(help="Output path for starter config TOML.")] = Path(
        ".diff-review.toml"
    ),
    backend: Annotated[
        str | None, typer.Option(help="Backend to preconfigure (detected from PATH by default).")
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite if file already exists."),
    ] = False,
) -> None:
    """Create a starter config file and an example rule beside it."""
    out_path = out.resolve()
    if out_path.exists() and not force:
        raise typer.BadParameter(
            f"Refusing to overwrite existing file: {out_path}. Use --force to overwrite."
        )
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(default_config_template(backend or detect_backend()), encoding="utf-8")
    typer.echo(f"Wrote starter config: {out_path}")

    rules_dir = out_path.parent / DEFAULT_RULES_DIR
    if not rules_dir.exists():
        rules_dir.mkdir(parents=True)
        typer.echo(f"Created rules directory: {rules_dir}")
    example_path = rules_dir / f"{EXAMPLE_RULE_ID}.json"
    if not example_path.exists():
        example_path.write_text(example_rule_template(), encoding="utf-8")
        typer.echo(f"Wrote example rule: {example_path} (edit the title and prompt)")


@app.command("security")
def security_command() -> None:
    """Explain what the secret guard does and what it does not."""
    typer.echo(SECURITY_GUIDE)


def main() -> None:
    """Console script entrypoint."""
    app()


def _read_diff_or_raise(
    *,
    diff_file: Path | None,
    stdin: bool,
    repo: Path,
    base: str | None,
    head: str | None,
) -> str:
    if diff_file is not None:
        try:
            return diff_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise typer.BadParameter(str(exc), param_hint="--diff-file") from exc

    if stdin:
        return sys.stdin.read()

    try:
        if base is not None and head is not None:
            return get_diff_between(repo, base, head)
        return get_local_diff(repo)
    except GitError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _confirm_preview(prepared: PreparedReview, *, auto_accept: bool, output_format: str) -> bool:
    if auto_accept or not prepared.runnable_rules:
        return True

    # Keep stdout machine-readable in JSON mode.
    to_stderr = output_format == "json"
    typer.echo(
        render_diff_preview(prepared.changed_files, prepared.excluded_files), err=to_stderr
    )
    if not stdio_is_interactive():
        typer.echo(
            click.style(
                "Diff confirmation is required by default. Re-run with --yes (-y) "
                "to auto-accept in non-interactive environments.",
                fg="red",
            ),
            err=True,
        )
        return False
    return typer.confirm("Proceed with diff-review analysis?", default=False, err=to_stderr)


def _resolve_root(repo: Path) -> Path:
    return get_repo_root(repo) or repo.resolve()


def _apply_overrides(
    config: AppConfig,
    *,
    format: str | None,
    fail_on: str | None,
    batch: bool | None,
) -> AppConfig:
    changes: dict[str, object] = {}
    if format is not None:
        changes["format"] = _format_or_raise(format)
    if fail_on is not None:
        resolved = fail_on.lower()
        if resolved not in FAIL_ON_CHOICES:
            choices = ", ".join(FAIL_ON_CHOICES)
            raise typer.BadParameter(f"fail-on must be one of: {choices}", param_hint="--fail-on")
        changes["fail_on"] = resolved
    if batch is not None:
        changes["batch"] = batch
    return dataclasses.replace(config, **changes) if changes else config


def _format_or_raise(value: str) -> str:
    output_format = value.lower()
    if output_format not in {"human", "json"}:
        raise typer.BadParameter("format must be one of: human, json", param_hint="--format")
    return output_format


def _load_config_or_raise(repo: Path, config_file: Path | None = None) -> AppConfig:
    try:
        return load_app_config(repo, config_path=config_file)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="config") from exc


def _load_rules_or_raise(rules_dir: Path, app_config: AppConfig) -> list[Rule]:
    try:
        return load_rules(
            rules_dir,
            disabled_rule_ids=app_config.rules.disable,
            severity_overrides=app_config.rules.severity_overrides,
        )
    except RuleLoadError as exc:
        raise typer.BadParameter(str(exc), param_hint="rules") from exc
