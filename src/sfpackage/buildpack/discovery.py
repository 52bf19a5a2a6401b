"""Inspection of an sfdx project on disk."""

import json
from pathlib import Path, PurePosixPath
import re

from pyvider.telemetry import logger

from .exceptions import ConfigurationError

PROJECT_FILE = "sfdx-project.json"


def detect(app_dir: Path) -> bool:
    """An application is buildable when it carries an sfdx project file."""
    return (app_dir / PROJECT_FILE).is_file()


def _read_project_file(app_dir: Path) -> dict:
    project_file = app_dir / PROJECT_FILE
    try:
        return json.loads(project_file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read {project_file}: {e}") from e


def read_package_directories(
    app_dir: Path, existing: bool = True, shallow: bool = False
) -> list[Path] | None:
    """
    Lists `packageDirectories[].path` from the project file, relative to
    `app_dir` and without duplicates.

    With `existing`, only paths present on disk are kept. With `shallow`,
    nested directories collapse onto their top-level root.
    """
    entries = _read_project_file(app_dir).get("packageDirectories")
    if not isinstance(entries, list):
        return None

    paths: dict[str, Path] = {}
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("path"), str):
            logger.debug("Skipping package directory entry", entry=entry)
            continue
        rel_path = PurePosixPath(entry["path"])
        if existing and not (app_dir / rel_path).exists():
            continue
        key = rel_path.parts[0] if shallow and rel_path.parts else str(rel_path)
        paths.setdefault(key, Path(key))
    return list(paths.values())


def annotation_pattern(word: str) -> re.Pattern[str]:
    return re.compile(rf"@\b{re.escape(word)}\b", re.IGNORECASE)


def find_one_file(root: Path, word: str) -> bool:
    """True if any file below `root` carries the `@<word>` annotation."""
    pattern = annotation_pattern(word)
    for path in root.rglob("*"):
        if not path.is_file():
            continue
        try:
            text = path.read_text(errors="ignore")
        except OSError:
            continue
        if pattern.search(text):
            return True
    return False


def find_one_apex_test(app_dir: Path) -> bool:
    if not detect(app_dir):
        return False
    roots = read_package_directories(app_dir, existing=True, shallow=True) or []
    return any(find_one_file(app_dir / root, "IsTest") for root in roots)
