import argparse
import logging
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import daemon
from .config import Config, ConfigError
from .constants import APP_NAME, LOG_FILE

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)


def load_config_or_exit(path: Path) -> Config:
    """Loads the configuration, exiting with status 1 on any error."""
    try:
        return Config.load(path)
    except ConfigError as e:
        err_console.print(f"[bold red]FATAL:[/bold red] {escape(str(e))}")
        sys.exit(1)


def check_config(path: Path) -> None:
    """Validates a configuration file and prints the jobs and webhooks it defines.

    Args:
        path (Path): The configuration file.
    """
    config = load_config_or_exit(path)

    jobs = Table(show_header=True, header_style="bold magenta", title="Jobs")
    jobs.add_column("Job", style="cyan")
    jobs.add_column("User")
    jobs.add_column("Schedule")
    jobs.add_column("Source")
    jobs.add_column("Remote", style="dim")
    jobs.add_column("Branch")
    jobs.add_column("Strategy")

    for user, job in config.jobs:
        jobs.add_row(
            job.name,
            user.username,
            job.schedule,
            job.source_path,
            job.remote_url or "-",
            job.branch,
            job.merge_strategy,
        )
    console.print(jobs)

    if config.webhooks:
        hooks = Table(show_header=True, header_style="bold magenta", title="Webhooks")
        hooks.add_column("Webhook", style="cyan")
        hooks.add_column("Method")
        hooks.add_column("Trigger")
        hooks.add_column("References", style="dim")
        for hook in config.webhooks:
            hooks.add_row(
                hook.name, hook.method, hook.trigger, ", ".join(hook.references) or "-"
            )
        console.print(hooks)

    known = {hook.name for hook in config.webhooks}
    for _, job in config.jobs:
        for name in job.webhooks:
            if name not in known:
                console.print(
                    f"[bold yellow]WARNING:[/bold yellow] Job '{job.name}' "
                    f"references unknown webhook '{name}'."
                )
        try:
            job.validate()
        except ValueError as e:
            console.print(f"[bold yellow]WARNING:[/bold yellow] {escape(str(e))}")

    console.print(
        f"[bold green]✔ Configuration OK:[/bold green] "
        f"{len(config.jobs)} job(s), {len(config.webhooks)} webhook(s)."
    )


def tail_log() -> None:
    """Follows the daemon log file in real-time."""
    if not LOG_FILE.exists():
        console.print(f"[red]No log file found yet at {LOG_FILE}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{LOG_FILE}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "1000", "-f", str(LOG_FILE)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Copy files into git repositories and publish them on a schedule.",
    )
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Start the scheduler (blocking)")
    run_parser.add_argument("config", type=Path, help="Path to the config file")

    now_parser = subparsers.add_parser("now", help="Run jobs immediately (one-off)")
    now_parser.add_argument("config", type=Path, help="Path to the config file")
    now_parser.add_argument(
        "--job",
        "-j",
        action="append",
        dest="jobs",
        metavar="NAME",
        help="Only run this job (repeatable)",
    )

    check_parser = subparsers.add_parser(
        "check", help="Validate the config and list jobs and webhooks"
    )
    check_parser.add_argument("config", type=Path, help="Path to the config file")

    subparsers.add_parser("log", help="Tail the daemon log file")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the Git Syncer CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "check":
        check_config(args.config)
        return
    elif args.command == "log":
        tail_log()
        return
    elif args.command in ("now", "run"):
        once = args.command == "now"
        try:
            failures = daemon.main(
                args.config,
                once=once,
                job_names=getattr(args, "jobs", None),
                interactive=once,
            )
        except ConfigError as e:
            err_console.print(f"[bold red]FATAL:[/bold red] {escape(str(e))}")
            sys.exit(1)
        if failures:
            console.print(f"[bold red]{failures} job(s) failed.[/bold red]")
            sys.exit(1)
        if once:
            console.print("[bold green]✔ Sync complete.[/bold green]")
        return

    parser.print_help()


if __name__ == "__main__":
    main()
