"""The single seam through which the external `sfdx` CLI is spawned."""

from collections.abc import Mapping, Sequence
import json
import os
from pathlib import Path
import subprocess
import threading
from typing import Any, Protocol

import click
from pyvider.telemetry import logger

from ..exceptions import ExternalToolError, ExternalToolParseError
from ..models import CommandResult


class CommandRunner(Protocol):
    def run(
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        stream_stderr: bool = False,
    ) -> CommandResult:
        ...


class SubprocessRunner:
    """Runs the packaging CLI as a child process."""

    def __init__(
        self,
        executable: str = "sfdx",
        cwd: Path | str | None = None,
        search_path: str | None = None,
        bin_path: Path | None = None,
    ) -> None:
        self.executable = executable
        self.cwd = cwd
        self.search_path = search_path
        self.bin_path = bin_path

    def _child_env(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        env = os.environ.copy()
        search_path = self.search_path if self.search_path is not None else env.get("PATH", "")
        if self.bin_path is not None:
            search_path = os.pathsep.join(p for p in (str(self.bin_path), search_path) if p)
        env["PATH"] = search_path
        if extra:
            env.update(extra)
        return env

    def run(
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        stream_stderr: bool = False,
    ) -> CommandResult:
        command = [self.executable, *args]
        logger.info("Running command", command=" ".join(command))
        try:
            if stream_stderr:
                return self._run_streaming(command, self._child_env(env))
            completed = subprocess.run(
                command,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                cwd=self.cwd,
                env=self._child_env(env),
                check=False,
            )
        except OSError as e:
            raise ExternalToolError(
                f"Failed to execute {' '.join(command)} from {self.cwd or os.getcwd()}: {e}"
            ) from e
        if completed.stderr:
            logger.debug("Command stderr", output=completed.stderr.strip())
        return CommandResult(completed.returncode, completed.stdout, completed.stderr)

    def _run_streaming(self, command: list[str], env: dict[str, str]) -> CommandResult:
        # stdout is drained on a helper thread so a full pipe cannot stall the
        # child while stderr is forwarded line by line.
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            cwd=self.cwd,
            env=env,
        )
        stdout_chunks: list[str] = []

        def drain_stdout() -> None:
            assert process.stdout is not None
            for chunk in process.stdout:
                stdout_chunks.append(chunk)

        reader = threading.Thread(target=drain_stdout, daemon=True)
        reader.start()

        stderr_lines: list[str] = []
        assert process.stderr is not None
        try:
            for line in process.stderr:
                stderr_lines.append(line)
                click.echo(line.rstrip("\n"), err=True)
        except BaseException:
            process.kill()
            raise
        finally:
            exit_code = process.wait()
            reader.join()
            process.stdout.close()
            process.stderr.close()
        return CommandResult(exit_code, "".join(stdout_chunks), "".join(stderr_lines))


def parse_json_output(result: CommandResult, what: str) -> dict[str, Any]:
    """Parses the `{status, result, warnings}` envelope printed with `--json`."""
    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ExternalToolParseError(
            f"Could not parse JSON output of {what}: {e}\n  Stdout:\n{result.stdout.strip()}"
        ) from e
    if not isinstance(payload, dict):
        raise ExternalToolParseError(
            f"Unexpected JSON output of {what}: expected an object, got {type(payload).__name__}"
        )
    for warning in payload.get("warnings") or []:
        logger.debug("Tool warning", command=what, warning=warning)
    return payload
