"""Loading of ``deploykit.yaml`` with validation.

SECURITY: The file comes from the repository being built, so its size is
checked before reading and YAML is parsed with ``safe_load`` only.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import DEFAULT_SETTINGS_FILE, MAX_SETTINGS_FILE_SIZE_BYTES
from .models import PipelineSettings

logger = logging.getLogger(__name__)


class SettingsLoadError(Exception):
    """Raised when the settings file cannot be loaded or fails validation."""

    pass


def load_settings(path: Path | str | None = None, *, required: bool = False) -> PipelineSettings:
    """Load and validate pipeline settings from YAML.

    Args:
        path: Settings file. Defaults to ``deploykit.yaml`` in the current
            directory.
        required: Raise when the file does not exist instead of returning
            defaults.

    Returns:
        Validated settings.

    Raises:
        SettingsLoadError: If the file cannot be loaded or fails validation.
    """
    settings_path = Path(path) if path is not None else Path(DEFAULT_SETTINGS_FILE)

    if not settings_path.exists():
        if required:
            raise SettingsLoadError(f"Settings file not found: {settings_path}")
        logger.debug("No settings file, using defaults", extra={"path": str(settings_path)})
        return PipelineSettings()

    try:
        file_size = settings_path.stat().st_size
    except OSError as e:
        raise SettingsLoadError(f"Failed to stat settings file {settings_path}: {e}") from e

    if file_size > MAX_SETTINGS_FILE_SIZE_BYTES:
        raise SettingsLoadError(
            f"Settings file exceeds maximum size of "
            f"{MAX_SETTINGS_FILE_SIZE_BYTES} bytes: {settings_path}"
        )

    try:
        content = settings_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SettingsLoadError(f"Failed to read settings file {settings_path}: {e}") from e

    return parse_settings(content, source=str(settings_path))


def parse_settings(content: str, source: str = "<string>") -> PipelineSettings:
    """Parse settings from YAML text."""
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SettingsLoadError(f"Invalid YAML in {source}: {e}") from e

    if raw_data is None:
        return PipelineSettings()
    if not isinstance(raw_data, dict):
        raise SettingsLoadError(f"Settings file must contain a YAML mapping: {source}")

    try:
        settings = PipelineSettings.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        raise SettingsLoadError(f"Validation failed for {source}:\n" + "\n".join(errors)) from e

    logger.info("Loaded pipeline settings from %s", source)
    return settings
