"""
Local record of the package and the versions built for it (`app-meta.json`).

Every write reloads the file, merges the change in and saves it back, so
entries written by earlier runs are preserved.
"""

import json
from pathlib import Path
from typing import Any

from attrs import define, field
from pyvider.telemetry import logger

from .exceptions import ConfigurationError
from .models import PackageIdentity, PackageVersion

APP_META_FILE = "app-meta.json"


@define(slots=True)
class PackageMeta:
    id: str
    name: str
    hub_user: str
    instance_url: str

    def to_json(self) -> dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "hubUser": self.hub_user,
            "instanceUrl": self.instance_url,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "PackageMeta":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            hub_user=data.get("hubUser", ""),
            instance_url=data.get("instanceUrl", ""),
        )


@define(slots=True)
class PackageVersionMeta:
    id: str
    name: str
    number: str
    package_id: str
    status: str = "Beta"

    def to_json(self) -> dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "number": self.number,
            "packageId": self.package_id,
            "status": self.status,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "PackageVersionMeta":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            number=data.get("number", ""),
            package_id=data.get("packageId", ""),
            status=data.get("status", "Beta"),
        )


@define(slots=True)
class AppMeta:
    package: PackageMeta | None = None
    package_versions: list[PackageVersionMeta] = field(factory=list)


class AppMetaStore:
    def __init__(self, app_dir: Path) -> None:
        self.path = app_dir / APP_META_FILE

    def load(self) -> AppMeta:
        if not self.path.is_file():
            return AppMeta()
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Could not read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.path} must hold a JSON object.")
        package = data.get("package")
        if package is not None and not isinstance(package, dict):
            raise ConfigurationError(f"The 'package' entry in {self.path} must be an object.")
        versions = data.get("packageVersions", [])
        if not isinstance(versions, list) or not all(isinstance(v, dict) for v in versions):
            raise ConfigurationError(
                f"The 'packageVersions' entry in {self.path} must be a list of objects."
            )
        return AppMeta(
            package=PackageMeta.from_json(package) if package else None,
            package_versions=[PackageVersionMeta.from_json(v) for v in versions],
        )

    def save(self, meta: AppMeta) -> None:
        data: dict[str, Any] = {}
        if meta.package is not None:
            data["package"] = meta.package.to_json()
        data["packageVersions"] = [v.to_json() for v in meta.package_versions]
        self.path.write_text(json.dumps(data, indent=2) + "\n")

    def write_package(
        self, package: PackageIdentity, hub_user: str, instance_url: str
    ) -> AppMeta:
        meta = self.load()
        meta.package = PackageMeta(
            id=package.package_id,
            name=package.name,
            hub_user=hub_user,
            instance_url=instance_url,
        )
        self.save(meta)
        logger.info(
            "Recorded package metadata", path=str(self.path), package_id=package.package_id
        )
        return meta

    def add_package_version(self, version: PackageVersion, version_name: str) -> AppMeta:
        meta = self.load()
        meta.package_versions.append(
            PackageVersionMeta(
                id=version.subscriber_version_id,
                name=version_name,
                number=version.version_number,
                package_id=version.package_id,
                status="Beta",
            )
        )
        self.save(meta)
        logger.info(
            "Recorded package version metadata",
            path=str(self.path),
            version_id=version.subscriber_version_id,
        )
        return meta

    def recorded_package_id(self, name: str, hub_user: str) -> str | None:
        package = self.load().package
        if package and package.id and package.name == name and package.hub_user == hub_user:
            return package.id
        return None
