"""CLI commands for memchart."""

from pathlib import Path

import click


def _load_config(
    port: int | None = None,
    seconds: float | None = None,
    verbose: bool = False,
    host: str | None = None,
    proc_root: Path | None = None,
):
    """Load the config file and apply command-line overrides."""
    from memchart.config import Config

    try:
        config = Config.load()
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    if port is not None:
        config.server.port = port
    if seconds is not None:
        config.sampling.interval = seconds
    if verbose:
        config.sampling.verbose = True
    if host is not None:
        config.server.host = host
    if proc_root is not None:
        config.sampling.proc_root = str(proc_root)
    return config


def _dump(config, pids: tuple[str, ...], fmt: str) -> None:
    """Sample once and write the snapshot to stdout."""
    from memchart import logging as console
    from memchart.daemon import dump_once
    from memchart.export import render_csv, render_json
    from memchart.sampler import EnumerationError

    console.configure_console()

    try:
        table = dump_once(config, pids or None)
    except EnumerationError as e:
        console.enumeration_failed(str(e))
        raise SystemExit(1) from e

    view = table.snapshot_view()
    if fmt == "json":
        click.echo(render_json(view))
    elif fmt == "table":
        _echo_table(view)
    else:
        click.echo(render_csv(view), nl=False)


def _echo_table(view) -> None:
    """Print the view as an aligned table, largest PSS first."""
    from memchart.formatting import format_kb, truncate

    if not view:
        click.echo("No processes sampled.")
        return

    click.echo(f"{'PID':>7}  {'Name':20}  {'RSS':>9}  {'PSS':>9}  {'USS':>9}")
    click.echo("-" * 62)
    for pid, record in sorted(view.items(), key=lambda item: item[1].pss, reverse=True):
        click.echo(
            f"{pid:>7}  {truncate(record.name, 20):20}  {format_kb(record.rss):>9}  "
            f"{format_kb(record.pss):>9}  {format_kb(record.uss):>9}"
        )

    total_pss = sum(record.pss for record in view.values())
    click.echo(f"\n{len(view)} processes, {format_kb(total_pss)} total PSS")


@click.group()
@click.version_option(package_name="memchart")
def main() -> None:
    """Chart per-process memory usage (RSS, PSS, USS) from /proc."""
    pass


@main.command()
@click.option("--port", "-p", type=click.IntRange(1, 65535), default=None, help="Port to listen on")
@click.option(
    "--seconds",
    "-s",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between measurements",
)
@click.option("--verbose", "-v", is_flag=True, help="Print CSV after every measurement")
@click.option("--exit", "-e", "exit_", is_flag=True, help="Dump a single snapshot then exit")
@click.option("--host", default=None, help="Address to bind")
@click.option(
    "--proc-root",
    type=click.Path(path_type=Path),
    default=None,
    help="Process-information root (default /proc)",
)
@click.argument("pids", nargs=-1)
def daemon(
    port: int | None,
    seconds: float | None,
    verbose: bool,
    exit_: bool,
    host: str | None,
    proc_root: Path | None,
    pids: tuple[str, ...],
) -> None:
    """Sample periodically and serve the snapshot over HTTP.

    With PIDS, only those processes are sampled.
    """
    config = _load_config(port, seconds, verbose, host, proc_root)

    if exit_:
        _dump(config, pids, "csv")
        return

    import asyncio

    from memchart.daemon import run_daemon
    from memchart.sampler import EnumerationError

    try:
        asyncio.run(run_daemon(config, pids or None))
    except EnumerationError as e:
        raise SystemExit(1) from e
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1) from e


@main.command()
@click.option(
    "--format",
    "-f",
    "fmt",
    type=click.Choice(["csv", "json", "table"]),
    default="csv",
    help="Output format",
)
@click.option(
    "--proc-root",
    type=click.Path(path_type=Path),
    default=None,
    help="Process-information root (default /proc)",
)
@click.argument("pids", nargs=-1)
def dump(fmt: str, proc_root: Path | None, pids: tuple[str, ...]) -> None:
    """Take a single measurement and print it."""
    config = _load_config(proc_root=proc_root)
    _dump(config, pids, fmt)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[server]")
    click.echo(f"  host = {cfg.server.host}")
    click.echo(f"  port = {cfg.server.port}")
    click.echo()
    click.echo("[sampling]")
    click.echo(f"  interval = {cfg.sampling.interval}")
    click.echo(f"  verbose = {cfg.sampling.verbose}")
    click.echo(f"  proc_root = {cfg.sampling.proc_root}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  heartbeat_cycles = {cfg.system.heartbeat_cycles}")
    click.echo(f"  log_max_bytes = {cfg.system.log_max_bytes}")
    click.echo(f"  log_backup_count = {cfg.system.log_backup_count}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from memchart import logging as console

    cfg = _load_config()

    if not cfg.config_path.exists():
        cfg.save()
        console.config_created(str(cfg.config_path))

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from memchart.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


if __name__ == "__main__":
    main()
