"""Resolves the distributable package and builds new versions of it."""

import json
from typing import Any

from attrs import evolve
from pyvider.telemetry import logger

from ..exceptions import ExternalToolError, ExternalToolParseError, PackageResolutionError
from ..models import CommandResult, PackageIdentity, PackageVersion
from .runner import CommandRunner, parse_json_output


def _tool_error(result: CommandResult) -> tuple[str, str]:
    """Pulls the tool's `name`/`message` fields out of a failed `--json` call."""
    try:
        details = json.loads(result.stdout)
    except json.JSONDecodeError:
        details = None
    if isinstance(details, dict) and (details.get("name") or details.get("message")):
        return str(details.get("name", "")), str(details.get("message", ""))
    return f"ExitCode{result.exit_code}", result.stderr.strip()


def _result_object(result: CommandResult, what: str) -> Any:
    payload = parse_json_output(result, what)
    if "result" not in payload:
        raise ExternalToolParseError(f"Output of {what} has no 'result'.")
    return payload["result"]


def _required(data: dict[str, Any], key: str, what: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise ExternalToolParseError(f"Output of {what} is missing '{key}'.")
    return value


class PackageBuilder:
    def __init__(self, runner: CommandRunner, hub_user: str) -> None:
        self.runner = runner
        self.hub_user = hub_user

    def _run(
        self, args: list[str], failure: str, stream_stderr: bool = False
    ) -> CommandResult:
        try:
            result = self.runner.run(args, stream_stderr=stream_stderr)
        except ExternalToolError as e:
            raise PackageResolutionError(f"{failure}: {e}") from e
        if not result.ok:
            name, message = _tool_error(result)
            raise PackageResolutionError(failure, name, message)
        return result

    def find_package(self, name: str) -> str | None:
        result = self._run(
            ["force:package:list", "--json", "-v", self.hub_user],
            f"failed to list packages on {self.hub_user}",
        )
        packages = _result_object(result, "force:package:list")
        if not isinstance(packages, list):
            raise ExternalToolParseError("force:package:list did not return a list.")
        for package in packages:
            if isinstance(package, dict) and package.get("Name") == name:
                return _required(package, "Id", "force:package:list")
        return None

    def create_package(
        self, name: str, description: str, package_type: str, root: str
    ) -> str:
        result = self._run(
            [
                "force:package:create",
                "--json",
                "-v", self.hub_user,
                "-n", name,
                "-d", description,
                "-t", package_type,
                "-r", root,
            ],
            f"failed to create new package {name}",
            stream_stderr=True,
        )
        created = _result_object(result, "force:package:create")
        if not isinstance(created, dict):
            raise ExternalToolParseError("force:package:create did not return an object.")
        package_id = _required(created, "Id", "force:package:create")
        logger.info("Created package", name=name, package_id=package_id)
        return package_id

    def resolve_package(
        self,
        name: str,
        description: str,
        package_type: str,
        root: str,
        create_if_needed: bool = True,
    ) -> PackageIdentity:
        package_id = self.find_package(name)
        if package_id is None:
            if not create_if_needed:
                raise PackageResolutionError(
                    f"No package named {name} exists on {self.hub_user} and creation is disabled"
                )
            package_id = self.create_package(name, description, package_type, root)
        return PackageIdentity(package_id=package_id, name=name)

    def create_package_version(
        self,
        package_id: str,
        def_file: str,
        version_name: str,
        version_number: str,
        installation_key: str,
        wait_seconds: int,
    ) -> PackageVersion:
        args = [
            "force:package:version:create",
            "--json",
            "-p", package_id,
            "-v", self.hub_user,
            "-f", def_file,
            "-a", version_name,
            "-n", version_number,
            "-w", str(wait_seconds),
        ]
        if installation_key:
            args.extend(["-k", installation_key])
        else:
            args.append("-x")

        result = self._run(
            args,
            f"failed to create new package version of {package_id}",
            stream_stderr=True,
        )
        request = _result_object(result, "force:package:version:create")
        if not isinstance(request, dict):
            raise ExternalToolParseError(
                "force:package:version:create did not return an object."
            )
        subscriber_id = request.get("SubscriberPackageVersionId")
        if not subscriber_id:
            raise PackageResolutionError(
                f"package version request {request.get('Id', '')} for {package_id} did not complete",
                "PackageVersionCreateIncomplete",
                f"status {request.get('Status', 'Unknown')}",
            )
        version = self.report_package_version(subscriber_id)
        if not version.version_id and request.get("Package2VersionId"):
            version = evolve(version, version_id=request["Package2VersionId"])
        return version

    def report_package_version(self, subscriber_version_id: str) -> PackageVersion:
        result = self._run(
            ["force:package:version:report", "--json", "-p", subscriber_version_id, "-v", self.hub_user],
            f"failed to fetch package version {subscriber_version_id}",
        )
        report = _result_object(result, "force:package:version:report")
        if not isinstance(report, dict):
            raise ExternalToolParseError(
                "force:package:version:report did not return an object."
            )
        return PackageVersion(
            version_id=report.get("Id") or "",
            subscriber_version_id=report.get("SubscriberPackageVersionId") or subscriber_version_id,
            package_id=_required(report, "Package2Id", "force:package:version:report"),
            name=report.get("Name") or "",
            version_number=_required(report, "Version", "force:package:version:report"),
            is_released=bool(report.get("IsReleased", False)),
        )
