"""Pytest fixtures for the entire sfpackage-buildpack test suite."""

from collections.abc import Callable
import json
from pathlib import Path
from typing import Any

import pytest
from pytest import MonkeyPatch

from helpers import APP_TOML, IV_HEX, KEY_HEX, PRIVATE_KEY_TEXT, FakeSfdx
from sfpackage.buildpack.config import EnvironmentSettings
from sfpackage.buildpack.crypto import encrypt_file


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: MonkeyPatch) -> None:
    """Keeps the suite away from the real home cache and the caller's credentials."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for var in (
        "SFDX_AUTH_FORCE",
        "SFDX_AUTH_KEYFILE",
        "SFDX_AUTH_ENC_KEYFILE",
        "OPENSSL_ENC_KEY",
        "OPENSSL_ENC_IV",
        "SFDX_AUTH_URLFILE",
        "SFDX_AUTH_URL",
        "SFDX_ACCESS_TOKEN",
        "CNB_LIFECYCLE_MODE",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def fake_sfdx() -> FakeSfdx:
    return FakeSfdx()


@pytest.fixture
def app_dir(tmp_path: Path) -> Path:
    """A minimal sfdx application with one Apex test class and an encrypted hub key."""
    root = tmp_path / "app"
    classes = root / "force-app" / "main" / "default" / "classes"
    classes.mkdir(parents=True)
    (root / "sfdx-project.json").write_text(
        json.dumps(
            {
                "packageDirectories": [{"path": "force-app", "default": True}],
                "sourceApiVersion": "58.0",
            }
        )
    )
    (classes / "SampleTest.cls").write_text(
        "@IsTest\nprivate class SampleTest {\n    @IsTest static void itWorks() {}\n}\n"
    )
    (classes / "Sample.cls").write_text("public class Sample {}\n")
    config_dir = root / "config"
    config_dir.mkdir()
    (config_dir / "project-scratch-def.json").write_text('{"edition": "Developer"}')
    (root / "app.toml").write_text(APP_TOML)

    plain = tmp_path / "hub.key"
    plain.write_text(PRIVATE_KEY_TEXT)
    encrypt_file(plain, config_dir / "hub.key.enc", KEY_HEX, IV_HEX)
    plain.unlink()
    return root


@pytest.fixture
def layers_dir(tmp_path: Path) -> Path:
    return tmp_path / "layers"


@pytest.fixture
def plain_key_file(tmp_path: Path) -> Path:
    path = tmp_path / "server.key"
    path.write_text(PRIVATE_KEY_TEXT)
    return path


@pytest.fixture
def make_settings() -> Callable[..., EnvironmentSettings]:
    """A factory fixture for environment snapshots."""

    def _make_settings(**overrides: Any) -> EnvironmentSettings:
        return EnvironmentSettings(**overrides)

    return _make_settings
