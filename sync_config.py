"""Connector settings loading.

Sources, in order:
  1. JSON settings document at `path` or SYNC_SETTINGS_PATH
  2. CLOSEIO_API_KEY fills api_key when the document has none

Usage:
    from sync_config import load_settings
    settings = load_settings("settings.json")
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv
from pydantic import ValidationError

from schemas import SyncSettings
from sync.errors import ConfigurationError

logger = logging.getLogger(__name__)


def load_settings(path: Optional[Union[str, Path]] = None) -> SyncSettings:
    """Load, validate and normalize the connector settings."""
    load_dotenv()
    path = path or os.environ.get("SYNC_SETTINGS_PATH")

    raw = {}
    if path:
        try:
            raw = json.loads(Path(path).read_text())
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"Cannot read settings from {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Settings in {path} must be a JSON object")
    else:
        logger.warning("No settings file given, using defaults (no segments are synchronized)")

    if not raw.get("api_key"):
        raw["api_key"] = os.environ.get("CLOSEIO_API_KEY")

    try:
        settings = SyncSettings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc
    return settings.normalized()
