"""CLI entrypoint for autodelegate."""

import logging
from pathlib import Path

import rich_click as click

from autodelegate import __version__
from autodelegate.config import MIN_POLL_INTERVAL_MS, BootstrapError
from autodelegate.orchestrator.controllers import (
    DaemonCommand,
    DelegationCliController,
    InitCommand,
    StatusCommand,
    SubmitCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DelegationCliController()

HOME_HELP = "Home directory (default: $AUTO_DELEGATE_HOME or .autodelegate in the repo root)."


@click.group()
@click.version_option(version=__version__, prog_name="autodelegate")
def autodelegate() -> None:
    """Delegate queued tasks to external AI CLI agents.

    Environment:

    - `AUTO_DELEGATE_HOME` home directory override
    - `AUTO_DELEGATE_BRANCH_PREFIX` worktree branch prefix (default `autodelegate/`)
    - `AUTO_DELEGATE_GLOBAL_AGENTS_DIR` shared agents directory override
    - `AUTO_DELEGATE_DISABLE_GLOBAL_AGENTS` set to `1` to ignore shared agents
    """


@autodelegate.command("daemon")
@click.option("--home", type=click.Path(path_type=Path), default=None, help=HOME_HELP)
@click.option(
    "--poll-ms",
    type=click.IntRange(min=MIN_POLL_INTERVAL_MS),
    default=None,
    help="Poll interval override in milliseconds.",
)
@click.option("--once", is_flag=True, default=False, help="Run one iteration and exit.")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Debug logging.")
def daemon(home: Path | None, poll_ms: int | None, once: bool, verbose: bool) -> None:
    """Recover orphaned tasks, then process the queue until stopped."""

    _configure_logging(verbose=verbose)
    try:
        lines = CONTROLLER.run_daemon(DaemonCommand(home=home, poll_ms=poll_ms, once=once))
    except BootstrapError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@autodelegate.command("submit")
@click.option("--title", required=True, help="Task title.")
@click.option("--prompt", required=True, help="Prompt to send to the delegated agent.")
@click.option("--agent", default=None, help="Preferred agent name.")
@click.option("--tool", default=None, help="Preferred agent command.")
@click.option("--cwd", default=None, help="Working directory for task execution.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=2,
    show_default=True,
    help="Max execution attempts including the first run.",
)
@click.option("--id", "task_id", default=None, help="Custom task id.")
@click.option(
    "--arg",
    "command_args",
    multiple=True,
    help="Extra positional argument for the agent. Can be repeated.",
)
@click.option("--env", "env", multiple=True, help="KEY=VALUE override. Can be repeated.")
@click.option("--home", type=click.Path(path_type=Path), default=None, help=HOME_HELP)
def submit(  # noqa: PLR0913
    title: str,
    prompt: str,
    agent: str | None,
    tool: str | None,
    cwd: str | None,
    max_attempts: int,
    task_id: str | None,
    command_args: tuple[str, ...],
    env: tuple[str, ...],
    home: Path | None,
) -> None:
    """Queue a task in the inbox."""

    try:
        lines = CONTROLLER.submit(
            SubmitCommand(
                home=home,
                title=title,
                prompt=prompt,
                agent=agent,
                tool=tool,
                cwd=cwd,
                max_attempts=max_attempts,
                task_id=task_id,
                command_args=command_args,
                env=env,
            ),
        )
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    _emit_lines(lines)


@autodelegate.command("status")
@click.option("--home", type=click.Path(path_type=Path), default=None, help=HOME_HELP)
def status(home: Path | None) -> None:
    """Show queue counts and project agents."""

    _emit_lines(CONTROLLER.status(StatusCommand(home=home)))


@autodelegate.command("init")
@click.option("--home", type=click.Path(path_type=Path), default=None, help=HOME_HELP)
@click.option("--force", is_flag=True, default=False, help="Overwrite existing default files.")
def init(home: Path | None, force: bool) -> None:
    """Create the home layout, default config and agent templates."""

    try:
        lines = CONTROLLER.init(InitCommand(home=home, force=force))
    except BootstrapError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _configure_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    autodelegate()
