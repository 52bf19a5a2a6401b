"""
Hub authentication.

Credential sources are tried in a fixed order; the first strategy that can
resolve wins and its outcome is final.
"""

from pathlib import Path
from typing import Protocol

from pyvider.telemetry import logger

from .. import console
from ..config import (
    ENV_ACCESS_TOKEN,
    ENV_AUTH_URL,
    ENV_AUTH_URL_FILE,
    ENV_ENC_IV,
    ENV_ENC_KEY,
    ENV_ENC_KEY_FILE,
    ENV_KEY_FILE,
    EnvironmentSettings,
    PipelineConfig,
)
from ..crypto import decrypt_file
from ..exceptions import (
    CredentialResolutionError,
    CredentialResolutionExhausted,
    CryptoError,
    ExternalToolError,
)
from ..models import (
    AccessTokenCredential,
    AuthUrlCredential,
    Credential,
    EncryptedKeyCredential,
    PrivateKeyCredential,
    SandboxStatus,
)
from .orgs import EnvironmentManager
from .runner import CommandRunner

DECRYPTED_KEY_FILE = ".sfdx_auth_key"
AUTH_URL_FILE = ".sfdx_auth_url"


class CredentialStrategy(Protocol):
    name: str

    def can_resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> bool:
        ...

    def resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> Credential:
        ...


def _decrypt_key(source: Path, settings: EnvironmentSettings, secrets_dir: Path) -> EncryptedKeyCredential:
    target = secrets_dir / DECRYPTED_KEY_FILE
    try:
        decrypt_file(source, target, settings.enc_key or "", settings.enc_iv or "")
    except CryptoError as e:
        raise CredentialResolutionError(f"Could not decrypt hub key {source}: {e}") from e
    logger.info("Decrypted hub key", source=str(source), target=str(target))
    return EncryptedKeyCredential(source_path=source, key_path=target)


def _named_file_exists(var: str, value: str | None) -> bool:
    if not value:
        return False
    if not Path(value).is_file():
        logger.warning("Credential file does not exist, skipping", variable=var, path=value)
        console.info(f"{var} is set but {value} does not exist")
        return False
    return True


class KeyFileStrategy:
    name = ENV_KEY_FILE

    def can_resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> bool:
        return _named_file_exists(ENV_KEY_FILE, settings.key_file)

    def resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> Credential:
        return PrivateKeyCredential(Path(settings.key_file))


class EncryptedKeyFileStrategy:
    name = ENV_ENC_KEY_FILE

    def __init__(self, secrets_dir: Path) -> None:
        self.secrets_dir = secrets_dir

    def can_resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> bool:
        # An explicit plain key file claims the key source, even when missing.
        return (
            not settings.key_file
            and _named_file_exists(ENV_ENC_KEY_FILE, settings.enc_key_file)
            and bool(settings.enc_key)
            and bool(settings.enc_iv)
        )

    def resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> Credential:
        return _decrypt_key(Path(settings.enc_key_file), settings, self.secrets_dir)


class ConfiguredKeyFileStrategy:
    name = "hub_key_path"

    def __init__(self, app_dir: Path, secrets_dir: Path) -> None:
        self.app_dir = app_dir
        self.secrets_dir = secrets_dir

    def _key_path(self, config: PipelineConfig) -> Path | None:
        if not config.hub_key_path:
            return None
        path = Path(config.hub_key_path)
        return path if path.is_absolute() else self.app_dir / path

    def can_resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> bool:
        if settings.key_file or settings.enc_key_file:
            return False
        path = self._key_path(config)
        return (
            path is not None
            and path.is_file()
            and bool(settings.enc_key)
            and bool(settings.enc_iv)
        )

    def resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> Credential:
        return _decrypt_key(self._key_path(config), settings, self.secrets_dir)


class AuthUrlFileStrategy:
    name = ENV_AUTH_URL_FILE

    def can_resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> bool:
        return _named_file_exists(ENV_AUTH_URL_FILE, settings.auth_url_file)

    def resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> Credential:
        return AuthUrlCredential(Path(settings.auth_url_file))


class AuthUrlStrategy:
    name = ENV_AUTH_URL

    def __init__(self, secrets_dir: Path) -> None:
        self.secrets_dir = secrets_dir

    def can_resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> bool:
        return bool(settings.auth_url)

    def resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> Credential:
        self.secrets_dir.mkdir(parents=True, exist_ok=True)
        url_file = self.secrets_dir / AUTH_URL_FILE
        url_file.write_text(settings.auth_url)
        url_file.chmod(0o600)
        return AuthUrlCredential(url_file)


class AccessTokenStrategy:
    name = ENV_ACCESS_TOKEN

    def can_resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> bool:
        return bool(settings.access_token)

    def resolve(self, config: PipelineConfig, settings: EnvironmentSettings) -> Credential:
        return AccessTokenCredential(settings.access_token)


def default_strategies(app_dir: Path, secrets_dir: Path) -> list[CredentialStrategy]:
    return [
        KeyFileStrategy(),
        EncryptedKeyFileStrategy(secrets_dir),
        ConfiguredKeyFileStrategy(app_dir, secrets_dir),
        AuthUrlFileStrategy(),
        AuthUrlStrategy(secrets_dir),
        AccessTokenStrategy(),
    ]


class Authenticator:
    def __init__(
        self,
        runner: CommandRunner,
        app_dir: Path,
        secrets_dir: Path,
        strategies: list[CredentialStrategy] | None = None,
    ) -> None:
        self.runner = runner
        self.strategies = strategies if strategies is not None else default_strategies(app_dir, secrets_dir)

    def resolve_credential(self, config: PipelineConfig, settings: EnvironmentSettings) -> Credential:
        for strategy in self.strategies:
            if strategy.can_resolve(config, settings):
                logger.info("Resolved hub credential source", source=strategy.name)
                return strategy.resolve(config, settings)
        raise CredentialResolutionExhausted(
            "Unable to authenticate hub. Hub should be pre-authenticated, or one of "
            f"{ENV_KEY_FILE}, {ENV_ENC_KEY_FILE} (with {ENV_ENC_KEY} and {ENV_ENC_IV}), "
            f"{ENV_AUTH_URL}, {ENV_AUTH_URL_FILE}, or {ENV_ACCESS_TOKEN} must be provided."
        )

    def authenticate(self, config: PipelineConfig, settings: EnvironmentSettings) -> Credential | None:
        """Returns the credential used, or None when the hub was already connected."""
        hub = config.hub_alias or config.hub_user
        if settings.force_auth:
            console.info("re-authenticating hub")
        elif EnvironmentManager(self.runner, config.hub_user).status(hub) is SandboxStatus.CONNECTED:
            console.info("Hub already authenticated")
            return None

        credential = self.resolve_credential(config, settings)
        args, env = self._auth_command(credential, config)
        result = self.runner.run(args, env=env)
        if not result.ok:
            raise ExternalToolError(
                f"failed to authenticate hub {config.hub_user} (exit code {result.exit_code}):\n"
                f"{result.stderr.strip()}",
                result,
            )
        console.output("authenticated hub", result)
        return credential

    def _auth_command(
        self, credential: Credential, config: PipelineConfig
    ) -> tuple[list[str], dict[str, str] | None]:
        match credential:
            case PrivateKeyCredential(key_path=key_path) | EncryptedKeyCredential(key_path=key_path):
                console.info("authenticating hub with key")
                args = [
                    "auth:jwt:grant",
                    "--clientid", config.hub_client_id,
                    "--jwtkeyfile", str(key_path.resolve()),
                    "--username", config.hub_user,
                    "--instanceurl", config.hub_instance_url,
                    "--setdefaultdevhubusername",
                ]
                if config.hub_alias:
                    console.info(f"using alias {config.hub_alias}")
                    args.extend(["--setalias", config.hub_alias])
                return args, None
            case AuthUrlCredential(url_file=url_file):
                console.info("authenticating hub with url")
                return [
                    "auth:sfdxurl:store",
                    "-f", str(url_file.resolve()),
                    "--setdefaultdevhubusername",
                ], None
            case AccessTokenCredential(token=token):
                console.info("authenticating hub with token")
                return [
                    "auth:accesstoken:store",
                    "--instanceurl", config.hub_instance_url,
                    "--setdefaultdevhubusername",
                    "--noprompt",
                ], {ENV_ACCESS_TOKEN: token}
        raise CredentialResolutionError(f"Unsupported credential {type(credential).__name__}")
