"""Creation, inspection and deletion of scratch orgs."""

from pyvider.telemetry import logger

from ..exceptions import EnvironmentOperationError, ExternalToolError, ExternalToolParseError
from ..models import CommandResult, SandboxHandle, SandboxStatus
from .runner import CommandRunner, parse_json_output


class EnvironmentManager:
    def __init__(self, runner: CommandRunner, hub_user: str) -> None:
        self.runner = runner
        self.hub_user = hub_user
        self._handles: dict[str, SandboxHandle] = {}

    def handle(self, alias: str) -> SandboxHandle:
        return self._handles.get(alias, SandboxHandle(alias))

    def status(self, alias: str) -> SandboxStatus:
        """Queries `org:display`; anything unreadable counts as UNKNOWN."""
        try:
            result = self.runner.run(["force:org:display", "-u", alias, "--json"])
            payload = parse_json_output(result, "force:org:display")
        except (ExternalToolError, ExternalToolParseError) as e:
            logger.debug("Org status unavailable", alias=alias, error=str(e))
            return SandboxStatus.UNKNOWN
        status = SandboxStatus.from_display(payload)
        logger.debug("Org status", alias=alias, status=status.value)
        return status

    def create_if_needed(self, alias: str, def_file: str, duration_days: int) -> bool:
        if self.status(alias) is SandboxStatus.ACTIVE:
            self._handles[alias] = SandboxHandle(alias, SandboxStatus.ACTIVE)
            return False
        self.create(alias, def_file, duration_days)
        return True

    def create(self, alias: str, def_file: str, duration_days: int) -> SandboxHandle:
        current = self._handles.get(alias)
        if current is not None and current.status is SandboxStatus.ACTIVE:
            raise EnvironmentOperationError(
                f"A scratch org named {alias} is already in flight for this run"
            )
        args = [
            "force:org:create",
            "-v", self.hub_user,
            "-f", def_file,
            "-d", str(duration_days),
            "-a", alias,
        ]
        result = self._run(args)
        if not result.ok:
            raise EnvironmentOperationError(
                f"failed to create scratch org {alias} on {self.hub_user}:\n{result.stderr}"
            )
        handle = SandboxHandle(alias, SandboxStatus.ACTIVE)
        self._handles[alias] = handle
        return handle

    def delete(self, alias: str) -> CommandResult:
        result = self._run(["force:org:delete", "-v", self.hub_user, "-u", alias, "-p"])
        if not result.ok:
            raise EnvironmentOperationError(
                f"failed to delete scratch org on {self.hub_user} named {alias}:\n{result.stderr}"
            )
        self._handles.pop(alias, None)
        return result

    def _run(self, args: list[str]) -> CommandResult:
        try:
            return self.runner.run(args)
        except ExternalToolError as e:
            raise EnvironmentOperationError(str(e)) from e
