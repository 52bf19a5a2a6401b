"""Application config (`app.toml`) and the environment snapshot for a run."""

from collections.abc import Mapping
import os
from pathlib import Path
import tomllib
from typing import Any, Self

from attrs import define, field, fields, validators

from .exceptions import ConfigurationError
from .models import LifecycleMode

APP_CONFIG_FILE = "app.toml"
LIFECYCLE_MODE_VAR = "CNB_LIFECYCLE_MODE"

ENV_FORCE_AUTH = "SFDX_AUTH_FORCE"
ENV_KEY_FILE = "SFDX_AUTH_KEYFILE"
ENV_ENC_KEY_FILE = "SFDX_AUTH_ENC_KEYFILE"
ENV_ENC_KEY = "OPENSSL_ENC_KEY"
ENV_ENC_IV = "OPENSSL_ENC_IV"
ENV_AUTH_URL_FILE = "SFDX_AUTH_URLFILE"
ENV_AUTH_URL = "SFDX_AUTH_URL"
ENV_ACCESS_TOKEN = "SFDX_ACCESS_TOKEN"

TEST_RESULTS_FORMATS = ("human", "tap", "junit", "json")
PACKAGE_TYPES = ("Unlocked", "Managed")


@define(frozen=True, slots=True)
class EnvironmentSettings:
    """Every environment variable the pipeline recognizes, read once."""

    force_auth: bool = False
    key_file: str | None = None
    enc_key_file: str | None = None
    enc_key: str | None = field(default=None, repr=False)
    enc_iv: str | None = field(default=None, repr=False)
    auth_url_file: str | None = None
    auth_url: str | None = field(default=None, repr=False)
    access_token: str | None = field(default=None, repr=False)
    search_path: str | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Self:
        env = os.environ if env is None else env
        return cls(
            force_auth=ENV_FORCE_AUTH in env,
            key_file=env.get(ENV_KEY_FILE),
            enc_key_file=env.get(ENV_ENC_KEY_FILE),
            enc_key=env.get(ENV_ENC_KEY),
            enc_iv=env.get(ENV_ENC_IV),
            auth_url_file=env.get(ENV_AUTH_URL_FILE),
            auth_url=env.get(ENV_AUTH_URL),
            access_token=env.get(ENV_ACCESS_TOKEN),
            search_path=env.get("PATH"),
        )


def _positive(instance: Any, attribute: Any, value: int) -> None:
    if value <= 0:
        raise ValueError(f"'{attribute.name}' must be positive, got {value}")


@define(frozen=True, slots=True, kw_only=True)
class PipelineConfig:
    hub_user: str = ""
    hub_client_id: str = ""
    hub_key_path: str = ""
    hub_instance_url: str = "https://login.salesforce.com"
    hub_alias: str | None = None

    org_alias: str = "dev"
    org_def_path: str = "config/project-scratch-def.json"
    org_duration_days: int = field(default=7, validator=[validators.instance_of(int), _positive])
    op_wait_seconds: int = field(default=120, validator=[validators.instance_of(int), _positive])

    run_tests: bool = field(default=True, validator=validators.instance_of(bool))
    test_wait_seconds: int = field(default=240, validator=[validators.instance_of(int), _positive])
    test_results_path: str | None = None
    test_results_format: str = field(default="human", validator=validators.in_(TEST_RESULTS_FORMATS))

    package_id: str = ""
    package_name: str = ""
    package_description: str = ""
    package_type: str = field(default="Unlocked", validator=validators.in_(PACKAGE_TYPES))
    package_root: str = "force-app"
    package_create_if_needed: bool = field(default=True, validator=validators.instance_of(bool))
    version_name: str = ""
    version_number: str = "1.0.0.NEXT"
    installation_key: str = field(default="", repr=False)


MODE_DEFAULTS: dict[LifecycleMode, dict[str, Any]] = {
    LifecycleMode.DEV: {"org_alias": "dev", "org_duration_days": 7},
    LifecycleMode.CI: {"org_alias": "ci", "org_duration_days": 1},
    LifecycleMode.PACKAGE: {"org_alias": "package", "org_duration_days": 1},
}


def _mode_key(mode: LifecycleMode) -> str:
    return mode.value.lower()


def read_app_toml(app_dir: Path) -> dict[str, Any]:
    config_path = app_dir / APP_CONFIG_FILE
    if not config_path.is_file():
        return {}
    try:
        with config_path.open("rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid {config_path}: {e}") from e
    app_conf = data.get("app", {})
    if not isinstance(app_conf, dict):
        raise ConfigurationError(f"The [app] entry in {config_path} must be a table.")
    return app_conf


def load_pipeline_config(app_dir: Path, mode: LifecycleMode) -> PipelineConfig:
    """Merges built-in defaults, `[app]` and `[app.<mode>]` from `app.toml`."""
    app_conf = read_app_toml(app_dir)
    mode_names = {_mode_key(m) for m in LifecycleMode}

    merged: dict[str, Any] = dict(MODE_DEFAULTS[mode])
    merged.update({k: v for k, v in app_conf.items() if k not in mode_names})
    overrides = app_conf.get(_mode_key(mode), {})
    if not isinstance(overrides, dict):
        raise ConfigurationError(f"[app.{_mode_key(mode)}] must be a table.")
    merged.update(overrides)

    known = {a.name for a in fields(PipelineConfig)}
    unknown = sorted(set(merged) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in {APP_CONFIG_FILE}: {', '.join(unknown)}"
        )
    try:
        return PipelineConfig(**merged)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid {APP_CONFIG_FILE} for {mode.value} mode: {e}") from e


def resolve_mode(explicit: str | None, env: Mapping[str, str] | None = None) -> LifecycleMode:
    env = os.environ if env is None else env
    value = explicit or env.get(LIFECYCLE_MODE_VAR)
    if not value:
        return LifecycleMode.DEV
    try:
        return LifecycleMode.parse(value)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
