"""
On-demand provisioning of the `sfdx` CLI runtime layer.
"""

import hashlib
import io
import json
from pathlib import Path, PurePosixPath
import shutil
import tarfile

import click
import requests
from pyvider.telemetry import logger

from .exceptions import ExternalToolError, RuntimeAcquisitionError
from .models import SFDX_VERSION_SIGNATURE, RuntimeLayer
from .packaging.runner import CommandRunner, SubprocessRunner

DEFAULT_RUNTIME_URL = (
    "https://developer.salesforce.com/media/salesforce-cli/sfdx/channels/stable/"
    "sfdx-linux-x64.tar.xz"
)
DEFAULT_MANIFEST_URL = (
    "https://developer.salesforce.com/media/salesforce-cli/sfdx/channels/stable/"
    "sfdx-linux-x64-buildmanifest"
)
ARCHIVE_ROOT_PREFIX = "sfdx/"
MANIFEST_CHECKSUM_FIELD = "sha256xz"
LAYER_NAME = "sfdx"
HTTP_TIMEOUT_SECONDS = 300


def _get_cache_dir() -> Path:
    """Returns the user-specific cache directory for runtime layers."""
    cache_dir = Path.home() / ".cache" / "sfpackage-buildpack"
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir


def default_layers_dir() -> Path:
    return _get_cache_dir() / "layers"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _http_get(url: str) -> requests.Response:
    try:
        response = requests.get(url, timeout=HTTP_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests.RequestException as e:
        raise RuntimeAcquisitionError(f"Failed to fetch {url}: {e}") from e
    return response


def fetch_manifest_checksum(manifest_url: str) -> str:
    response = _http_get(manifest_url)
    try:
        manifest = response.json()
    except ValueError as e:
        raise RuntimeAcquisitionError(
            f"Runtime manifest at {manifest_url} is not valid JSON: {e}"
        ) from e
    checksum = manifest.get(MANIFEST_CHECKSUM_FIELD) if isinstance(manifest, dict) else None
    return checksum if isinstance(checksum, str) else ""


def _strip_prefix(name: str, prefix: str | None) -> str | None:
    if not prefix:
        return name
    root = prefix.rstrip("/")
    path = PurePosixPath(name)
    if not path.is_relative_to(root):
        return None
    return str(path.relative_to(root))


def download_and_extract(url: str, target: Path, prefix: str | None = ARCHIVE_ROOT_PREFIX) -> str:
    """
    Downloads a tar.xz archive into `target`, stripping `prefix` from member
    paths. Returns the SHA-256 of the downloaded bytes.
    """
    content = _http_get(url).content
    checksum = sha256_hex(content)
    target.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(content), mode="r:xz") as archive:
            for member in archive.getmembers():
                name = _strip_prefix(member.name, prefix)
                if name is None or name in ("", "."):
                    continue
                changes = {"name": name}
                if member.islnk():
                    changes["linkname"] = _strip_prefix(member.linkname, prefix) or member.linkname
                archive.extract(member.replace(**changes, deep=False), target, filter="data")
    except (tarfile.TarError, OSError, EOFError, ValueError) as e:
        raise RuntimeAcquisitionError(f"Failed to extract {url} into {target}: {e}") from e
    return checksum


class RuntimeProvisioner:
    """Ensures a working `sfdx` CLI is available, caching it as a layer."""

    def __init__(
        self,
        layers_dir: Path,
        url: str = DEFAULT_RUNTIME_URL,
        manifest_url: str = DEFAULT_MANIFEST_URL,
        probe_runner: CommandRunner | None = None,
    ) -> None:
        self.layers_dir = layers_dir
        self.url = url
        self.manifest_url = manifest_url
        self.probe_runner = probe_runner or SubprocessRunner()

    @property
    def layer_path(self) -> Path:
        return self.layers_dir / LAYER_NAME

    @property
    def metadata_path(self) -> Path:
        return self.layers_dir / f"{LAYER_NAME}.json"

    def preinstalled(self) -> bool:
        """True when an `sfdx` already on PATH answers with its signature."""
        try:
            result = self.probe_runner.run(["--version"])
        except ExternalToolError:
            return False
        return result.ok and SFDX_VERSION_SIGNATURE in result.stdout

    def recorded_layer(self) -> RuntimeLayer | None:
        if not self.metadata_path.is_file():
            return None
        try:
            metadata = json.loads(self.metadata_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable runtime layer metadata", error=str(e))
            return None
        return RuntimeLayer(
            url=metadata.get("url", ""),
            manifest_url=metadata.get("manifest", ""),
            sha256=metadata.get("sha256", ""),
            path=self.layer_path,
        )

    def ensure_runtime(self) -> RuntimeLayer | None:
        """
        Returns the runtime layer to use, or None when a pre-installed CLI
        is used instead.
        """
        if self.preinstalled():
            logger.info("Using pre-installed sfdx CLI")
            return None

        manifest_checksum = fetch_manifest_checksum(self.manifest_url)
        layer = self.recorded_layer()
        if (
            layer is not None
            and layer.sha256
            and layer.sha256 == manifest_checksum
            and layer.bin_path.is_dir()
        ):
            logger.info("Keeping sfdx runtime layer", sha256=layer.sha256)
            return layer

        return self._recreate_layer()

    def _recreate_layer(self) -> RuntimeLayer:
        click.secho(f"Installing sfdx CLI into '{self.layer_path}'...", fg="yellow")
        if self.layer_path.exists():
            shutil.rmtree(self.layer_path)
        checksum = download_and_extract(self.url, self.layer_path)
        layer = RuntimeLayer(
            url=self.url,
            manifest_url=self.manifest_url,
            sha256=checksum,
            path=self.layer_path,
        )
        self.layers_dir.mkdir(parents=True, exist_ok=True)
        self.metadata_path.write_text(json.dumps(layer.to_metadata(), indent=2))
        click.secho(f"Installed sfdx CLI (sha256 {checksum}).", fg="green")
        return layer

    def clean(self) -> bool:
        removed = False
        if self.layer_path.exists():
            shutil.rmtree(self.layer_path)
            removed = True
        if self.metadata_path.exists():
            self.metadata_path.unlink()
            removed = True
        return removed
