"""User-facing console sections printed during a pipeline run."""

import click

from .models import CommandResult


def header(msg: str) -> None:
    click.secho(msg, fg="magenta", bold=True)


def info(msg: str) -> None:
    click.echo(msg)


def error(header_msg: str, err: BaseException | str) -> None:
    click.secho(f"❌ {header_msg}\n{err}", fg="red", err=True)


def output(header_msg: str, result: CommandResult) -> None:
    """Echoes what an external command printed, under a short header."""
    click.echo(header_msg)
    if result.stdout.strip():
        click.echo(result.stdout.rstrip())
    if result.stderr.strip():
        click.echo(result.stderr.rstrip(), err=True)
