"""Tests for the PipelineOrchestrator class."""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from helpers import HUB_USER, FakeSfdx, envelope
from sfpackage.buildpack.config import EnvironmentSettings
from sfpackage.buildpack.exceptions import (
    CredentialResolutionExhausted,
    EnvironmentOperationError,
    ExternalToolError,
    RuntimeAcquisitionError,
    TestsFailedError,
)
from sfpackage.buildpack.meta import APP_META_FILE
from sfpackage.buildpack.models import (
    CommandResult,
    LifecycleMode,
    PipelineState,
    RuntimeLayer,
    SandboxStatus,
    TestOutcome,
)
from sfpackage.buildpack.packaging.orchestrator import PipelineOrchestrator


def make_orchestrator(
    app_dir: Path,
    layers_dir: Path,
    fake_sfdx: FakeSfdx,
    settings: EnvironmentSettings,
    layer: RuntimeLayer | None = None,
) -> PipelineOrchestrator:
    provisioner = MagicMock()
    provisioner.ensure_runtime.return_value = layer
    return PipelineOrchestrator(
        app_dir=app_dir,
        layers_dir=layers_dir,
        settings=settings,
        provisioner=provisioner,
        runner_factory=lambda _layer: fake_sfdx,
    )


@pytest.fixture
def key_settings(plain_key_file: Path) -> EnvironmentSettings:
    return EnvironmentSettings(key_file=str(plain_key_file))


def test_ci_build_with_failing_test_still_tears_down(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx, key_settings: EnvironmentSettings
) -> None:
    fake_sfdx.script(
        "force:apex:test:run",
        CommandResult(
            100,
            envelope(
                {
                    "summary": {"outcome": "Failed"},
                    "tests": [
                        {"FullName": "SampleTest.itWorks", "Outcome": "Pass"},
                        {"FullName": "SampleTest.itBreaks", "Outcome": "Fail"},
                    ],
                },
                status=100,
            ),
        ),
    )
    orchestrator = make_orchestrator(app_dir, layers_dir, fake_sfdx, key_settings)

    with pytest.raises(TestsFailedError) as exc_info:
        orchestrator.run(LifecycleMode.CI)

    assert exc_info.value.outcome.outcome is TestOutcome.FAIL
    assert exc_info.value.outcome.failed == ("SampleTest.itBreaks",)
    assert "SampleTest.itBreaks" in str(exc_info.value)
    assert orchestrator.state is PipelineState.FAILED
    assert fake_sfdx.subcommands() == [
        "force:org:display",
        "auth:jwt:grant",
        "force:org:create",
        "force:source:push",
        "force:apex:test:run",
        "force:org:delete",
    ]
    assert fake_sfdx.orgs == set()


def test_ci_build_push_failure_runs_teardown_and_skips_tests(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx, key_settings: EnvironmentSettings
) -> None:
    fake_sfdx.script("force:source:push", CommandResult(1, "", "Deploy failed"))
    orchestrator = make_orchestrator(app_dir, layers_dir, fake_sfdx, key_settings)

    with pytest.raises(ExternalToolError, match="failed to push source to ci"):
        orchestrator.run(LifecycleMode.CI)

    assert "force:apex:test:run" not in fake_sfdx.subcommands()
    assert fake_sfdx.subcommands()[-1] == "force:org:delete"
    assert orchestrator.state is PipelineState.FAILED


def test_ci_build_success(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx, key_settings: EnvironmentSettings
) -> None:
    orchestrator = make_orchestrator(app_dir, layers_dir, fake_sfdx, key_settings)

    result = orchestrator.run(LifecycleMode.CI)

    assert result.state is PipelineState.DONE
    assert result.tests is not None and result.tests.outcome is TestOutcome.PASS
    create = fake_sfdx.calls_to("force:org:create")[0]
    assert create.args[create.args.index("-a") + 1] == "ci"
    assert create.args[create.args.index("-d") + 1] == "1"
    assert len(fake_sfdx.calls_to("force:org:delete")) == 1


def test_ci_teardown_failure_is_reported_when_it_is_the_only_failure(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx, key_settings: EnvironmentSettings
) -> None:
    fake_sfdx.script("force:org:delete", CommandResult(1, "", "org is locked"))
    orchestrator = make_orchestrator(app_dir, layers_dir, fake_sfdx, key_settings)

    with pytest.raises(EnvironmentOperationError, match="org is locked"):
        orchestrator.run(LifecycleMode.CI)
    assert orchestrator.state is PipelineState.FAILED


def test_ci_first_error_wins_over_teardown_failure(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx, key_settings: EnvironmentSettings
) -> None:
    fake_sfdx.script("force:source:push", CommandResult(1, "", "Deploy failed"))
    fake_sfdx.script("force:org:delete", CommandResult(1, "", "org is locked"))
    orchestrator = make_orchestrator(app_dir, layers_dir, fake_sfdx, key_settings)

    with pytest.raises(ExternalToolError) as exc_info:
        orchestrator.run(LifecycleMode.CI)
    assert not isinstance(exc_info.value, EnvironmentOperationError)


def test_package_build_creates_package_and_records_metadata(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx
) -> None:
    fake_sfdx.connected.add(HUB_USER)
    fake_sfdx.script("force:package:list", CommandResult(0, envelope([])))
    fake_sfdx.script(
        "force:package:create", CommandResult(0, envelope({"Id": "0Ho000000000001AAA"}))
    )
    fake_sfdx.script(
        "force:package:version:create",
        CommandResult(
            0,
            envelope(
                {
                    "Id": "08c000000000001AAA",
                    "Status": "Success",
                    "Package2Id": "0Ho000000000001AAA",
                    "Package2VersionId": "05i000000000001AAA",
                    "SubscriberPackageVersionId": "04t000000000001AAA",
                }
            ),
        ),
    )
    fake_sfdx.script(
        "force:package:version:report",
        CommandResult(
            0,
            envelope(
                {
                    "Id": "05i000000000001AAA",
                    "SubscriberPackageVersionId": "04t000000000001AAA",
                    "Package2Id": "0Ho000000000001AAA",
                    "Name": "Spring",
                    "Version": "1.0.0.1",
                    "IsReleased": False,
                }
            ),
        ),
    )
    orchestrator = make_orchestrator(app_dir, layers_dir, fake_sfdx, EnvironmentSettings())

    result = orchestrator.run(LifecycleMode.PACKAGE)

    assert result.state is PipelineState.DONE
    assert result.package is not None
    assert result.package.package_id == "0Ho000000000001AAA"
    assert result.package_version is not None
    assert result.package_version.subscriber_version_id == "04t000000000001AAA"
    assert result.package_version.release_status == "Beta"

    version_create = fake_sfdx.calls_to("force:package:version:create")[0]
    assert "-x" in version_create.args
    assert "-k" not in version_create.args
    assert version_create.stream_stderr is True
    assert "force:org:create" not in fake_sfdx.subcommands()
    assert "force:org:delete" not in fake_sfdx.subcommands()

    meta = json.loads((app_dir / APP_META_FILE).read_text())
    assert meta["package"] == {
        "id": "0Ho000000000001AAA",
        "name": "Sample App",
        "hubUser": HUB_USER,
        "instanceUrl": "https://login.salesforce.com",
    }
    assert meta["packageVersions"] == [
        {
            "id": "04t000000000001AAA",
            "name": "Spring",
            "number": "1.0.0.1",
            "packageId": "0Ho000000000001AAA",
            "status": "Beta",
        }
    ]


def test_package_build_reuses_recorded_package(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx
) -> None:
    (app_dir / APP_META_FILE).write_text(
        json.dumps(
            {
                "package": {
                    "id": "0Ho000000000009AAA",
                    "name": "Sample App",
                    "hubUser": HUB_USER,
                    "instanceUrl": "https://login.salesforce.com",
                },
                "packageVersions": [],
            }
        )
    )
    fake_sfdx.connected.add(HUB_USER)
    fake_sfdx.script(
        "force:package:version:create",
        CommandResult(0, envelope({"SubscriberPackageVersionId": "04t000000000002AAA"})),
    )
    fake_sfdx.script(
        "force:package:version:report",
        CommandResult(
            0,
            envelope(
                {
                    "Id": "05i000000000002AAA",
                    "Package2Id": "0Ho000000000009AAA",
                    "Version": "1.0.0.2",
                }
            ),
        ),
    )
    orchestrator = make_orchestrator(app_dir, layers_dir, fake_sfdx, EnvironmentSettings())

    orchestrator.run(LifecycleMode.PACKAGE)

    assert "force:package:list" not in fake_sfdx.subcommands()
    assert "force:package:create" not in fake_sfdx.subcommands()
    version_create = fake_sfdx.calls_to("force:package:version:create")[0]
    assert version_create.args[version_create.args.index("-p") + 1] == "0Ho000000000009AAA"
    meta = json.loads((app_dir / APP_META_FILE).read_text())
    assert [v["number"] for v in meta["packageVersions"]] == ["1.0.0.2"]


def test_dev_build_with_tests_disabled(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx, key_settings: EnvironmentSettings
) -> None:
    with (app_dir / "app.toml").open("a") as f:
        f.write("\n[app.dev]\nrun_tests = false\n")
    orchestrator = make_orchestrator(app_dir, layers_dir, fake_sfdx, key_settings)

    result = orchestrator.run(LifecycleMode.DEV)

    assert result.state is PipelineState.DONE
    assert result.tests is None
    assert result.sandbox is not None and result.sandbox.status is SandboxStatus.ACTIVE
    assert "force:org:create" in fake_sfdx.subcommands()
    assert "force:source:push" in fake_sfdx.subcommands()
    assert "force:apex:test:run" not in fake_sfdx.subcommands()
    assert "force:org:delete" not in fake_sfdx.subcommands()


def test_dev_build_reuses_active_org(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx, key_settings: EnvironmentSettings
) -> None:
    orchestrator = make_orchestrator(app_dir, layers_dir, fake_sfdx, key_settings)

    orchestrator.run(LifecycleMode.DEV)
    result = orchestrator.run(LifecycleMode.DEV)

    assert len(fake_sfdx.calls_to("force:org:create")) == 1
    assert len(fake_sfdx.calls_to("force:source:push")) == 2
    assert result.tests is not None and result.tests.passed == ("SampleTest.itWorks",)
    assert fake_sfdx.orgs == {"dev"}


def test_dev_build_push_failure_keeps_org(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx, key_settings: EnvironmentSettings
) -> None:
    fake_sfdx.script("force:source:push", CommandResult(1, "", "Deploy failed"))
    orchestrator = make_orchestrator(app_dir, layers_dir, fake_sfdx, key_settings)

    with pytest.raises(ExternalToolError):
        orchestrator.run(LifecycleMode.DEV)

    assert "force:apex:test:run" not in fake_sfdx.subcommands()
    assert "force:org:delete" not in fake_sfdx.subcommands()
    assert fake_sfdx.orgs == {"dev"}


def test_missing_credentials_fail_before_any_org_operation(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx
) -> None:
    orchestrator = make_orchestrator(app_dir, layers_dir, fake_sfdx, EnvironmentSettings())

    with pytest.raises(CredentialResolutionExhausted):
        orchestrator.run(LifecycleMode.CI)

    assert fake_sfdx.subcommands() == ["force:org:display"]
    assert orchestrator.state is PipelineState.FAILED


def test_runtime_failure_stops_the_pipeline(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx, key_settings: EnvironmentSettings
) -> None:
    orchestrator = make_orchestrator(app_dir, layers_dir, fake_sfdx, key_settings)
    orchestrator.provisioner.ensure_runtime.side_effect = RuntimeAcquisitionError("offline")

    with pytest.raises(RuntimeAcquisitionError):
        orchestrator.run(LifecycleMode.DEV)

    assert fake_sfdx.calls == []
    assert orchestrator.state is PipelineState.FAILED


def test_runner_factory_receives_the_runtime_layer(
    app_dir: Path, layers_dir: Path, fake_sfdx: FakeSfdx
) -> None:
    layer = RuntimeLayer(url="u", manifest_url="m", sha256="abc", path=layers_dir / "sfdx")
    seen: list[RuntimeLayer | None] = []
    provisioner = MagicMock()
    provisioner.ensure_runtime.return_value = layer
    fake_sfdx.connected.add(HUB_USER)

    def factory(received: RuntimeLayer | None) -> FakeSfdx:
        seen.append(received)
        return fake_sfdx

    orchestrator = PipelineOrchestrator(
        app_dir=app_dir,
        layers_dir=layers_dir,
        settings=EnvironmentSettings(),
        provisioner=provisioner,
        runner_factory=factory,
    )
    orchestrator.run(LifecycleMode.DEV)

    assert seen == [layer]


def test_default_runner_prepends_layer_bin(app_dir: Path, layers_dir: Path) -> None:
    layer = RuntimeLayer(url="u", manifest_url="m", sha256="abc", path=layers_dir / "sfdx")
    orchestrator = PipelineOrchestrator(
        app_dir=app_dir,
        layers_dir=layers_dir,
        settings=EnvironmentSettings(search_path="/usr/bin"),
        provisioner=MagicMock(),
    )

    runner = orchestrator.runner_factory(layer)

    assert runner.cwd == app_dir
    assert runner.bin_path == layer.bin_path
    assert runner.search_path == "/usr/bin"
