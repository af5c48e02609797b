"""
ServerSH — CLI entrypoint.

Usage:
    serversh --help
    serversh install container/docker
    serversh status
    serversh config check
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from serversh import __version__
from serversh.core.constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_MODULES_DIR,
    DEFAULT_STATE_PATH,
    ExitCode,
)
from serversh.core.errors import ConfigError, ServerSHError
from serversh.core.observability.logging_config import level_from_config, setup_logging


def _config_log_level(config_path: Path) -> str | None:
    """``serversh.log_level`` from the config file, if it can be read."""
    from serversh.core.config.store import ConfigStore

    store = ConfigStore(config_path)
    try:
        store.load()
    except ConfigError:
        # Reported by the command itself
        return None
    value = store.get("serversh.log_level")
    return level_from_config(value) if value is not None else None


def _paths(ctx: click.Context) -> dict:
    return {
        "config_path": ctx.obj["config_path"],
        "state_path": ctx.obj["state_path"],
    }


def _exit(code: int) -> None:
    if code:
        sys.exit(int(code))


@click.group()
@click.version_option(version=__version__, prog_name="serversh")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warn", "error", "fatal"], case_sensitive=False),
    default=None,
    help="Log level (overrides SERVERSH_LOG_LEVEL and the config file).",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    envvar="SERVERSH_CONFIG",
    default=str(DEFAULT_CONFIG_PATH),
    show_default=True,
    help="Configuration file.",
)
@click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False),
    envvar="SERVERSH_STATE",
    default=str(DEFAULT_STATE_PATH),
    show_default=True,
    help="State file.",
)
@click.option(
    "--modules-dir",
    type=click.Path(file_okay=False),
    envvar="SERVERSH_MODULES_DIR",
    default=str(DEFAULT_MODULES_DIR),
    show_default=True,
    help="Directory of module files.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    log_level: str | None,
    config_path: str,
    state_path: str,
    modules_dir: str,
) -> None:
    """ServerSH — declarative host provisioning."""
    ctx.ensure_object(dict)
    ctx.obj["quiet"] = quiet
    ctx.obj["config_path"] = Path(config_path)
    ctx.obj["state_path"] = Path(state_path)
    ctx.obj["modules_dir"] = Path(modules_dir)

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    elif log_level:
        level = level_from_config(log_level)
    elif os.environ.get("SERVERSH_LOG_LEVEL"):
        level = level_from_config(os.environ["SERVERSH_LOG_LEVEL"])
    else:
        level = _config_log_level(Path(config_path)) or "WARNING"

    setup_logging(
        level=level,
        log_file=os.environ.get("SERVERSH_LOG_FILE"),
        log_file_level=os.environ.get("SERVERSH_LOG_FILE_LEVEL"),
    )


# ── install ─────────────────────────────────────────────────────


@cli.command()
@click.argument("modules", nargs=-1)
@click.option("--parallel", "-j", type=click.IntRange(1, 16), default=None,
              help="Run dependency waves concurrently with N workers.")
@click.option("--force", is_flag=True, help="Reinstall even if a previous install completed.")
@click.option("--resume", is_flag=True, help="Skip modules that already completed.")
@click.option("--dry-run", is_flag=True, help="Show the execution plan only.")
@click.option("--validate-only", is_flag=True, help="Validate configuration and plan, then exit.")
@click.option("--profile", default=None, help="Configuration profile to apply for this run.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(
    ctx: click.Context,
    modules: tuple[str, ...],
    parallel: int | None,
    force: bool,
    resume: bool,
    dry_run: bool,
    validate_only: bool,
    profile: str | None,
    as_json: bool,
) -> None:
    """Install MODULES (default: all enabled modules)."""
    from serversh.core.use_cases.install import run_install

    if force and resume:
        raise click.UsageError("--force and --resume are mutually exclusive")

    result = run_install(
        **_paths(ctx),
        modules_dir=ctx.obj["modules_dir"],
        modules=list(modules) or None,
        parallel=parallel,
        force=force,
        resume=resume,
        dry_run=dry_run,
        validate_only=validate_only,
        profile=profile,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        _exit(result.exit_code)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        for err in result.errors:
            click.echo(f"   • {err}", err=True)
        _exit(result.exit_code)
        return

    if result.already_completed:
        click.echo("Installation already completed. Use --force to reinstall.")
        return

    if validate_only:
        click.secho("✅ Validation complete - all checks passed", fg="green")
        click.echo(f"   Execution order: {' → '.join(result.plan) or '(none)'}")
        return

    report = result.report
    if report is None:
        return

    if report.dry_run:
        click.secho("🔍 Dry run — nothing will be changed", fg="cyan", bold=True)
        for index, wave in enumerate(report.waves, start=1):
            click.echo(f"   Wave {index}: {', '.join(wave)}")
        click.echo(f"   Execution order: {' → '.join(report.order) or '(none)'}")
        return

    for name in report.order:
        outcome = report.outcomes.get(name)
        if name in report.already_completed:
            click.echo(f"   ✓ {name} (already completed)")
        elif outcome is None:
            click.echo(f"   · {name} (not run)")
        elif outcome.ok:
            click.secho(f"   ✓ {name} ({outcome.duration_s:.1f}s)", fg="green")
        elif outcome.failed:
            click.secho(f"   ✗ {name}: {outcome.error}", fg="red")
        else:
            click.secho(f"   ⊘ {name}: {outcome.message}", fg="yellow")

    click.echo()
    summary = (
        f"{len(report.completed)} completed, {len(report.failed)} failed, "
        f"{len(report.skipped)} skipped, {len(report.pending)} not run"
    )
    if report.exit_code == ExitCode.SUCCESS:
        click.secho(f"✅ Installation {report.status} ({summary})", fg="green", bold=True)
        return

    click.secho(f"❌ Installation {report.status} ({summary})", fg="red", bold=True)
    if not ctx.obj.get("quiet"):
        start_checkpoint = report.checkpoints[0] if report.checkpoints else "<checkpoint-id>"
        click.echo("   Next steps:")
        click.echo("     - Check the logs (SERVERSH_LOG_FILE) for details")
        click.echo("     - Resume:    serversh install --resume")
        click.echo(f"     - Roll back: serversh rollback {start_checkpoint}")
    _exit(report.exit_code)


# ── modules / profiles ──────────────────────────────────────────


@cli.command("modules")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def modules_cmd(ctx: click.Context, as_json: bool) -> None:
    """List registered modules."""
    from serversh.core.use_cases.status import list_modules

    result = list_modules(**_paths(ctx), modules_dir=ctx.obj["modules_dir"])

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        _exit(result.exit_code)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        _exit(result.exit_code)
        return

    click.secho(f"Registered modules ({len(result.modules)}):", bold=True)
    for m in result.modules:
        flag = " [disabled]" if m.name in result.disabled else ""
        state = result.states.get(m.name)
        state_label = f" — {state}" if state else ""
        click.echo(f"  {m.name:<24} v{m.version:<10} {m.description} ({m.category}){flag}{state_label}")

    for path, error in result.failures.items():
        click.secho(f"  ⚠️  {path}: {error}", fg="yellow")


@cli.group(invoke_without_command=True)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def profiles(ctx: click.Context, as_json: bool) -> None:
    """List configuration profiles."""
    if ctx.invoked_subcommand is not None:
        return

    from serversh.core.use_cases.maintenance import list_profiles

    result = list_profiles(ctx.obj["config_path"])
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    names = result.data["profiles"]
    if not names:
        click.echo(f"No profiles in {result.data['directory']}")
        return
    click.secho(f"Profiles ({len(names)}):", bold=True)
    for name in names:
        click.echo(f"  • {name}")


@profiles.command("create")
@click.argument("name")
@click.option("--description", "-d", default="", help="Profile description.")
@click.pass_context
def profiles_create(ctx: click.Context, name: str, description: str) -> None:
    """Create a profile skeleton."""
    from serversh.core.use_cases.maintenance import create_profile

    result = create_profile(ctx.obj["config_path"], name, description)
    _report(result)


# ── checkpoints / rollback ──────────────────────────────────────


@cli.group()
def checkpoint() -> None:
    """State checkpoint commands."""


@checkpoint.command("create")
@click.argument("description")
@click.pass_context
def checkpoint_create(ctx: click.Context, description: str) -> None:
    """Snapshot the current state."""
    from serversh.core.use_cases.maintenance import create_checkpoint

    _report(create_checkpoint(**_paths(ctx), description=description))


@checkpoint.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def checkpoint_list(ctx: click.Context, as_json: bool) -> None:
    """List checkpoints, oldest first."""
    from serversh.core.use_cases.maintenance import list_checkpoints

    result = list_checkpoints(ctx.obj["state_path"])
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        _exit(result.exit_code)
        return
    if result.error:
        _report(result)
        return
    for cp in result.data["checkpoints"]:
        click.echo(f"{cp['id']}: {cp['description']} ({cp['timestamp']}) [{cp['type']}]")


@cli.command()
@click.argument("checkpoint_id", required=False)
@click.option("--module", "-m", default=None,
              help="Run this module's own rollback instead of restoring a checkpoint.")
@click.pass_context
def rollback(ctx: click.Context, checkpoint_id: str | None, module: str | None) -> None:
    """Restore the state recorded in CHECKPOINT_ID.

    Only the state file is restored; changes made on the host stay in
    place. Use --module to undo a single module on the host.
    """
    from serversh.core.use_cases.maintenance import rollback as do_rollback

    if bool(checkpoint_id) == bool(module):
        raise click.UsageError("Give either CHECKPOINT_ID or --module")

    _report(do_rollback(
        **_paths(ctx),
        checkpoint_id=checkpoint_id,
        module=module,
        modules_dir=ctx.obj["modules_dir"],
    ))


# ── status / cleanup ────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show installation status."""
    from serversh.core.use_cases.status import get_status

    result = get_status(**_paths(ctx), modules_dir=ctx.obj["modules_dir"])

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        _exit(result.exit_code)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        _exit(result.exit_code)
        return

    state = result.engine.get("state", {})
    click.secho(f"\n📋 ServerSH v{result.engine['version']}", fg="cyan", bold=True)
    click.echo(f"   Status:   {state.get('status')}")
    click.echo(f"   Progress: {state.get('progress')}")
    click.echo(f"   Modules registered: {result.engine['registered_modules']}")

    if result.modules:
        click.echo()
        click.secho("   Modules:", bold=True)
        colors = {"completed": "green", "failed": "red", "skipped": "yellow", "running": "cyan"}
        for name, entry in result.modules.items():
            click.echo(f"     • {name:<24} ", nl=False)
            click.secho(str(entry.state), fg=colors.get(str(entry.state), "white"))

    if result.checkpoints:
        click.echo()
        click.secho(f"   Checkpoints: {len(result.checkpoints)}", bold=True)
        for cp in result.checkpoints[-3:]:
            click.echo(f"     {cp.id}: {cp.description}")

    if result.history:
        click.echo()
        click.secho("   Recent runs:", bold=True)
        for run in reversed(result.history):
            click.echo(
                f"     {run.timestamp}  {run.status:<9} "
                f"{run.modules_completed}/{run.modules_total} completed"
            )
    click.echo()


@cli.command()
@click.option("--days", type=click.IntRange(min=0), default=30, show_default=True,
              help="Remove backups older than this many days.")
@click.pass_context
def cleanup(ctx: click.Context, days: int) -> None:
    """Remove old backups and temp files."""
    from serversh.core.use_cases.maintenance import cleanup as do_cleanup

    _report(do_cleanup(**_paths(ctx), days=days))


# ── config ──────────────────────────────────────────────────────


@cli.group()
def config() -> None:
    """Configuration commands."""


@config.command("check")
@click.option("--profile", default=None, help="Validate with this profile applied.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, profile: str | None, as_json: bool) -> None:
    """Validate the configuration file."""
    from serversh.core.use_cases.config_check import check_config

    result = check_config(ctx.obj["config_path"], profile=profile)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        _exit(0 if result.valid else ExitCode.CONFIG_ERROR)
        return

    if result.valid:
        click.secho("✅ Configuration is valid", fg="green", bold=True)
        click.echo(f"   File: {result.config_path}")
        click.echo(f"   Log level: {result.summary.get('log_level')}")
        click.echo(f"   Parallel jobs: {result.summary.get('parallel_jobs')}")
        click.echo(f"   SSH port: {result.summary.get('ssh_port')}")
    else:
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        click.echo()
        sys.exit(ExitCode.CONFIG_ERROR)


@config.command("get")
@click.argument("key")
@click.pass_context
def config_get(ctx: click.Context, key: str) -> None:
    """Print the value at a dotted KEY."""
    from serversh.core.use_cases.config_check import get_config_value

    try:
        found, value = get_config_value(ctx.obj["config_path"], key)
    except ServerSHError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(e.exit_code)

    if not found:
        click.secho(f"Key not found: {key}", fg="yellow", err=True)
        sys.exit(ExitCode.CONFIG_ERROR)
    if isinstance(value, (dict, list)):
        click.echo(json.dumps(value, indent=2))
    else:
        click.echo(value)


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set a dotted KEY to VALUE (parsed as YAML) and save."""
    from serversh.core.use_cases.config_check import set_config_value

    try:
        parsed = set_config_value(ctx.obj["config_path"], key, value)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        for err in e.errors:
            click.echo(f"   • {err}", err=True)
        sys.exit(e.exit_code)

    click.secho(f"✅ {key} = {parsed!r}", fg="green")


@cli.command()
@click.argument("name")
@click.pass_context
def enable(ctx: click.Context, name: str) -> None:
    """Enable module NAME in the configuration."""
    _toggle(ctx, name, enabled=True)


@cli.command()
@click.argument("name")
@click.pass_context
def disable(ctx: click.Context, name: str) -> None:
    """Disable module NAME in the configuration."""
    _toggle(ctx, name, enabled=False)


def _toggle(ctx: click.Context, name: str, enabled: bool) -> None:
    from serversh.core.use_cases.config_check import toggle_module

    try:
        toggle_module(ctx.obj["config_path"], name, enabled)
    except ServerSHError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(e.exit_code)
    click.secho(f"✅ Module {'enabled' if enabled else 'disabled'}: {name}", fg="green")


def _report(result) -> None:
    """Print a MaintenanceResult and exit with its code."""
    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(result.exit_code)
    click.secho(f"✅ {result.message}", fg="green")


if __name__ == "__main__":
    cli()
