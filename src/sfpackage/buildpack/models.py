"""Value types shared by the pipeline components."""

import enum
from pathlib import Path
from typing import Any, Self

from attrs import define, field

# Marker the external CLI prints on `--version`.
SFDX_VERSION_SIGNATURE = "sfdx-cli/"

# The tool reports this when a project defines no tests at all.
NO_TESTS_DEFECT_MESSAGE = (
    "Always provide a classes, suites, tests, or testLevel property"
)


class LifecycleMode(enum.Enum):
    DEV = "Dev"
    CI = "CI"
    PACKAGE = "Package"

    @classmethod
    def parse(cls, value: str) -> Self:
        for mode in cls:
            if mode.value.lower() == value.strip().lower():
                return mode
        choices = ", ".join(m.value for m in cls)
        raise ValueError(f"Unknown lifecycle mode '{value}'. Expected one of: {choices}")


class PipelineState(enum.Enum):
    START = "Start"
    RUNTIME_READY = "RuntimeReady"
    AUTHENTICATED = "Authenticated"
    ENVIRONMENT_READY = "EnvironmentReady"
    SOURCE_PUSHED = "SourcePushed"
    TESTS_RUN = "TestsRun"
    PACKAGE_RESOLVED = "PackageResolved"
    VERSION_BUILT = "VersionBuilt"
    DONE = "Done"
    FAILED = "Failed"


class SandboxStatus(enum.Enum):
    ACTIVE = "Active"
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"
    DELETED = "Deleted"
    UNKNOWN = "Unknown"

    @classmethod
    def from_name(cls, name: Any) -> "SandboxStatus":
        if isinstance(name, str):
            for status in cls:
                if status is not cls.UNKNOWN and status.value == name:
                    return status
        return cls.UNKNOWN

    @classmethod
    def from_display(cls, payload: Any) -> "SandboxStatus":
        """Maps an `org:display` JSON envelope onto a status."""
        if not isinstance(payload, dict):
            return cls.UNKNOWN
        result = payload.get("result")
        if not isinstance(result, dict):
            return cls.UNKNOWN
        for key in ("connectedStatus", "status"):
            if result.get(key) is not None:
                return cls.from_name(result[key])
        return cls.UNKNOWN


class TestOutcome(enum.Enum):
    __test__ = False

    PASS = "Pass"
    FAIL = "Fail"


@define(frozen=True, slots=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@define(frozen=True, slots=True)
class RuntimeLayer:
    url: str
    manifest_url: str
    sha256: str
    path: Path

    @property
    def bin_path(self) -> Path:
        return self.path / "bin"

    def to_metadata(self) -> dict[str, str]:
        return {"url": self.url, "manifest": self.manifest_url, "sha256": self.sha256}


@define(frozen=True, slots=True)
class PrivateKeyCredential:
    key_path: Path


@define(frozen=True, slots=True)
class EncryptedKeyCredential:
    source_path: Path
    key_path: Path


@define(frozen=True, slots=True)
class AuthUrlCredential:
    url_file: Path


@define(frozen=True, slots=True)
class AccessTokenCredential:
    token: str = field(repr=False)


Credential = (
    PrivateKeyCredential
    | EncryptedKeyCredential
    | AuthUrlCredential
    | AccessTokenCredential
)


@define(frozen=True, slots=True)
class SandboxHandle:
    alias: str
    status: SandboxStatus = SandboxStatus.UNKNOWN


@define(frozen=True, slots=True)
class TestOutcomeSet:
    __test__ = False

    outcome: TestOutcome
    passed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    ignored: tuple[str, ...] = ()

    @classmethod
    def empty(cls) -> Self:
        return cls(outcome=TestOutcome.PASS)

    @property
    def total(self) -> int:
        return len(self.passed) + len(self.failed) + len(self.ignored)


@define(frozen=True, slots=True)
class PackageIdentity:
    package_id: str
    name: str


@define(frozen=True, slots=True)
class PackageVersion:
    version_id: str
    subscriber_version_id: str
    package_id: str
    name: str
    version_number: str
    is_released: bool = False

    @property
    def release_status(self) -> str:
        return "Released" if self.is_released else "Beta"


@define(frozen=True, slots=True)
class PipelineResult:
    mode: LifecycleMode
    state: PipelineState
    sandbox: SandboxHandle | None = None
    tests: TestOutcomeSet | None = None
    package: PackageIdentity | None = None
    package_version: PackageVersion | None = None
