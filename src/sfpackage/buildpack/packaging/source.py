"""Pushes local source into a scratch org."""

from pyvider.telemetry import logger

from ..exceptions import ExternalToolError
from ..models import CommandResult
from .runner import CommandRunner


def push_source(runner: CommandRunner, alias: str, wait_seconds: int) -> CommandResult:
    """
    Runs `force:source:push`. The tool reports progress on stderr even for
    runs that later succeed, so stderr is forwarded live and only the exit
    status decides the outcome.
    """
    result = runner.run(
        ["force:source:push", "-f", "-u", alias, "-w", str(wait_seconds)],
        stream_stderr=True,
    )
    if not result.ok:
        raise ExternalToolError(
            f"failed to push source to {alias}:\n Exited with {result.exit_code}",
            result,
        )
    logger.info("Pushed source", alias=alias)
    return result
