"""Core logic for running the Dev, CI and Package pipelines against the sfdx CLI."""

from collections.abc import Callable
from pathlib import Path

from pyvider.telemetry import logger

from .. import console
from ..config import EnvironmentSettings, PipelineConfig, load_pipeline_config
from ..discovery import find_one_apex_test
from ..exceptions import EnvironmentOperationError, PipelineError, TestsFailedError
from ..meta import AppMetaStore
from ..models import (
    LifecycleMode,
    PackageIdentity,
    PipelineResult,
    PipelineState,
    RuntimeLayer,
    SandboxHandle,
    TestOutcome,
    TestOutcomeSet,
)
from ..runtime import LAYER_NAME, RuntimeProvisioner
from .apex import run_tests
from .auth import Authenticator
from .orgs import EnvironmentManager
from .package import PackageBuilder
from .runner import CommandRunner, SubprocessRunner
from .source import push_source


class PipelineOrchestrator:
    """Sequences provisioning, authentication and the mode-specific stages."""

    def __init__(
        self,
        app_dir: Path,
        layers_dir: Path,
        settings: EnvironmentSettings | None = None,
        provisioner: RuntimeProvisioner | None = None,
        runner_factory: Callable[[RuntimeLayer | None], CommandRunner] | None = None,
        config_loader: Callable[[Path, LifecycleMode], PipelineConfig] = load_pipeline_config,
    ) -> None:
        self.app_dir = app_dir
        self.layers_dir = layers_dir
        self.settings = settings if settings is not None else EnvironmentSettings.from_env()
        self.provisioner = provisioner or RuntimeProvisioner(layers_dir)
        self.runner_factory = runner_factory or self._default_runner
        self.config_loader = config_loader
        self.state = PipelineState.START

    def _default_runner(self, layer: RuntimeLayer | None) -> CommandRunner:
        return SubprocessRunner(
            cwd=self.app_dir,
            search_path=self.settings.search_path,
            bin_path=layer.bin_path if layer is not None else None,
        )

    def _advance(self, state: PipelineState) -> None:
        logger.debug("Pipeline state", previous=self.state.value, current=state.value)
        self.state = state

    def run(self, mode: LifecycleMode) -> PipelineResult:
        """Runs one pipeline; raises the first blocking PipelineError."""
        self.state = PipelineState.START
        try:
            config = self.config_loader(self.app_dir, mode)
            layer = self.provisioner.ensure_runtime()
            self._advance(PipelineState.RUNTIME_READY)
            runner = self.runner_factory(layer)

            match mode:
                case LifecycleMode.DEV:
                    result = self._dev_build(config, runner)
                case LifecycleMode.CI:
                    result = self._ci_build(config, runner)
                case LifecycleMode.PACKAGE:
                    result = self._package_build(config, runner)
        except PipelineError as e:
            self._advance(PipelineState.FAILED)
            logger.error("Pipeline failed", mode=mode.value, error=str(e))
            raise

        self._advance(PipelineState.DONE)
        return PipelineResult(mode=mode, state=self.state, **result)

    def _authenticate(self, config: PipelineConfig, runner: CommandRunner) -> None:
        console.header("---> Authenticating hub")
        secrets_dir = self.layers_dir / LAYER_NAME
        Authenticator(runner, self.app_dir, secrets_dir).authenticate(config, self.settings)
        self._advance(PipelineState.AUTHENTICATED)

    def _push(self, config: PipelineConfig, runner: CommandRunner) -> None:
        console.header("---> Preparing artifacts")
        console.info("---> pushing source code")
        push_source(runner, config.org_alias, config.op_wait_seconds)
        self._advance(PipelineState.SOURCE_PUSHED)

    def _tests(self, config: PipelineConfig, runner: CommandRunner) -> TestOutcomeSet | None:
        console.header("---> Running tests")
        if not find_one_apex_test(self.app_dir):
            console.info("---> no apex tests found, skipping")
            return None
        console.info("---> running apex tests")
        outcome = run_tests(
            runner,
            self.app_dir,
            config.org_alias,
            config.test_results_path,
            config.test_results_format,
            config.test_wait_seconds,
        )
        self._advance(PipelineState.TESTS_RUN)
        console.info(
            f"---> tests {outcome.outcome.value}: {len(outcome.passed)} passed, "
            f"{len(outcome.failed)} failed, {len(outcome.ignored)} ignored"
        )
        if outcome.outcome is TestOutcome.FAIL:
            raise TestsFailedError(outcome)
        return outcome

    def _dev_build(self, config: PipelineConfig, runner: CommandRunner) -> dict:
        console.header("---> Dev Build")
        self._authenticate(config, runner)

        console.header("---> Creating environment")
        environments = EnvironmentManager(runner, config.hub_user)
        created = environments.create_if_needed(
            config.org_alias, config.org_def_path, config.org_duration_days
        )
        console.info("---> created scratch org" if created else "---> using existing scratch org")
        self._advance(PipelineState.ENVIRONMENT_READY)

        self._push(config, runner)

        tests = None
        if config.run_tests:
            tests = self._tests(config, runner)
        return {"sandbox": environments.handle(config.org_alias), "tests": tests}

    def _ci_build(self, config: PipelineConfig, runner: CommandRunner) -> dict:
        console.header("---> CI Build")
        self._authenticate(config, runner)

        environments = EnvironmentManager(runner, config.hub_user)
        error: Exception | None = None
        tests = None
        try:
            console.header("---> Creating environment")
            console.info("---> creating scratch org")
            environments.create(config.org_alias, config.org_def_path, config.org_duration_days)
            self._advance(PipelineState.ENVIRONMENT_READY)
            self._push(config, runner)
            tests = self._tests(config, runner)
        except Exception as e:
            error = e
            console.error("---> CI build failed", e)

        console.header("---> Resetting environment")
        console.info("---> deleting scratch org")
        try:
            environments.delete(config.org_alias)
        except EnvironmentOperationError as e:
            if error is None:
                raise
            console.error("---> Failed deleting scratch org", e)
            logger.error("Teardown failed", alias=config.org_alias, error=str(e))

        if error is not None:
            raise error
        return {"sandbox": SandboxHandle(config.org_alias), "tests": tests}

    def _resolve_package(self, config: PipelineConfig, builder: PackageBuilder) -> PackageIdentity:
        store = AppMetaStore(self.app_dir)
        if config.package_id:
            return PackageIdentity(package_id=config.package_id, name=config.package_name)

        recorded = store.recorded_package_id(config.package_name, config.hub_user)
        if recorded:
            console.info(f"---> using recorded package {recorded}")
            return PackageIdentity(package_id=recorded, name=config.package_name)

        console.info("---> resolving package")
        package = builder.resolve_package(
            config.package_name,
            config.package_description,
            config.package_type,
            config.package_root,
            create_if_needed=config.package_create_if_needed,
        )
        store.write_package(package, config.hub_user, config.hub_instance_url)
        return package

    def _package_build(self, config: PipelineConfig, runner: CommandRunner) -> dict:
        console.header("---> Package Build")
        self._authenticate(config, runner)

        console.header("---> Preparing artifacts")
        builder = PackageBuilder(runner, config.hub_user)
        package = self._resolve_package(config, builder)
        self._advance(PipelineState.PACKAGE_RESOLVED)

        console.info("---> building package version")
        version = builder.create_package_version(
            package.package_id,
            config.org_def_path,
            config.version_name,
            config.version_number,
            config.installation_key,
            config.op_wait_seconds,
        )
        AppMetaStore(self.app_dir).add_package_version(version, config.version_name)
        self._advance(PipelineState.VERSION_BUILT)
        console.info(
            f"---> new package version created: {version.subscriber_version_id} ({version.version_number})"
        )
        return {"package": package, "package_version": version}
