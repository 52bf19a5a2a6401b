"""The `sfpack` command-line interface."""

import importlib.metadata
from pathlib import Path

import click

from .config import ENV_ENC_IV, ENV_ENC_KEY, EnvironmentSettings, resolve_mode
from .crypto import decrypt_file, encrypt_file
from .discovery import detect
from .exceptions import CryptoError, PipelineError
from .packaging.orchestrator import PipelineOrchestrator
from .runtime import RuntimeProvisioner, default_layers_dir

try:
    __version__ = importlib.metadata.version("sfpackage-buildpack")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0-dev"


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(
    __version__,
    "-V",
    "--version",
    prog_name="sfpack",
    message="%(prog)s version %(version)s",
)
def cli() -> None:
    """Salesforce application lifecycle build tool."""
    pass


@cli.group("pack")
@click.option(
    "-m",
    "--mode",
    default=None,
    help="Lifecycle mode: Dev, CI or Package. Defaults to $CNB_LIFECYCLE_MODE, then Dev.",
)
@click.pass_context
def pack_group(ctx: click.Context, mode: str | None) -> None:
    """Detects and builds applications."""
    ctx.obj = {"mode": mode}


@pack_group.command("detect")
@click.option(
    "-p",
    "--path",
    "app_path",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Application directory.",
)
def detect_command(app_path: str) -> None:
    """Succeeds when the directory holds an sfdx project."""
    if not detect(Path(app_path)):
        click.secho(f"❌ No sfdx project found in '{app_path}'.", fg="red", err=True)
        raise click.Abort()
    click.secho(f"✅ sfdx project detected in '{app_path}'.", fg="green")


@pack_group.command("build")
@click.option(
    "-p",
    "--path",
    "app_path",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Application directory.",
)
@click.option(
    "-l",
    "--layers",
    "layers_path",
    default=None,
    type=click.Path(file_okay=False, resolve_path=True),
    help="Directory holding the cached sfdx runtime layer.",
)
@click.pass_context
def build_command(ctx: click.Context, app_path: str, layers_path: str | None) -> None:
    """Runs the pipeline for the selected lifecycle mode."""
    try:
        mode = resolve_mode(ctx.obj.get("mode"))
        click.echo(f"🚀 Running {mode.value} pipeline...")
        orchestrator = PipelineOrchestrator(
            app_dir=Path(app_path),
            layers_dir=Path(layers_path) if layers_path else default_layers_dir(),
            settings=EnvironmentSettings.from_env(),
        )
        result = orchestrator.run(mode)
    except PipelineError as e:
        click.secho(f"❌ Build Failed:\n{e}", fg="red", err=True)
        raise click.Abort() from e

    if result.package_version is not None:
        click.secho(
            f"✅ Package version {result.package_version.version_number} built: "
            f"{result.package_version.subscriber_version_id}",
            fg="green",
        )
    else:
        click.secho(f"✅ {mode.value} build finished.", fg="green")


@cli.group("file")
def file_group() -> None:
    """Encrypts and decrypts hub key files."""
    pass


def _key_options(func):
    func = click.option(
        "-v",
        "--iv",
        envvar=ENV_ENC_IV,
        required=True,
        help=f"Hex initialization vector. Defaults to ${ENV_ENC_IV}.",
    )(func)
    func = click.option(
        "-k",
        "--key",
        envvar=ENV_ENC_KEY,
        required=True,
        help=f"Hex encryption key. Defaults to ${ENV_ENC_KEY}.",
    )(func)
    return func


@file_group.command("encrypt")
@click.argument("source", type=click.Path(dir_okay=False))
@click.argument("target", type=click.Path(dir_okay=False))
@_key_options
def encrypt_command(source: str, target: str, key: str, iv: str) -> None:
    """Encrypts SOURCE into TARGET (AES-256-CBC, base64)."""
    try:
        encrypt_file(Path(source), Path(target), key, iv)
    except CryptoError as e:
        click.secho(f"❌ Encryption failed: {e}", fg="red", err=True)
        raise click.Abort() from e
    click.secho(f"✅ Encrypted '{source}' into '{target}'.", fg="green")


@file_group.command("decrypt")
@click.argument("source", type=click.Path(dir_okay=False))
@click.argument("target", type=click.Path(dir_okay=False))
@_key_options
def decrypt_command(source: str, target: str, key: str, iv: str) -> None:
    """Decrypts SOURCE into TARGET."""
    try:
        decrypt_file(Path(source), Path(target), key, iv)
    except CryptoError as e:
        click.secho(f"❌ Decryption failed: {e}", fg="red", err=True)
        raise click.Abort() from e
    click.secho(f"✅ Decrypted '{source}' into '{target}'.", fg="green")


@cli.command("clean")
@click.option(
    "-l",
    "--layers",
    "layers_path",
    default=None,
    type=click.Path(file_okay=False, resolve_path=True),
    help="Directory holding the cached sfdx runtime layer.",
)
def clean_command(layers_path: str | None) -> None:
    """Removes the cached sfdx runtime layer."""
    click.echo("🧹 Cleaning cached sfdx runtime...")
    layers_dir = Path(layers_path) if layers_path else default_layers_dir()
    if RuntimeProvisioner(layers_dir).clean():
        click.secho(f"✅ Removed runtime layer from: {layers_dir}", fg="green")
    else:
        click.secho("i️ Runtime layer not found, nothing to clean.", fg="yellow")


main = cli

if __name__ == "__main__":
    cli()
