"""Injected configuration: a read-only key/value view over a YAML file.

The desktop application that owns these values persists them itself; this
module only reads them.  String values support ``$VAR``, ``${VAR}`` and
``${VAR:-default}`` environment expansion as well as ``~`` for the home
directory.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

SETTINGS_ENV_VAR = "REPLAYFORGE_SETTINGS"
DEFAULT_SETTINGS_PATH = Path("~/.config/replayforge/settings.yaml")

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


class ConfigurationError(RuntimeError):
    """Raised when a required executable or file is not configured."""


class Settings:
    """String-valued settings accessor.

    Parameters
    ----------
    values : dict, optional
        Raw key/value pairs.  Non-string values are stringified on access.
    """

    def __init__(self, values: dict | None = None) -> None:
        self._values: dict[str, str] = {
            str(k): str(v) for k, v in (values or {}).items() if v is not None
        }

    def get(self, key: str, default: str = "") -> str:
        value = self._values.get(key, "")
        return value if value else default

    def get_int(self, key: str, default: int) -> int:
        raw = self.get(key)
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            logger.warning("Setting %s=%r is not an integer, using %d", key, raw, default)
            return default

    def require_path(self, key: str, what: str) -> Path:
        """Return the existing file configured under *key*.

        Raises
        ------
        ConfigurationError
            If the key is unset or the path does not exist.
        """
        raw = self.get(key)
        if not raw or not Path(raw).exists():
            raise ConfigurationError(
                f"{what} path not configured or not found ({key}={raw!r}). "
                f"Please set it in the settings file."
            )
        return Path(raw)

    def __contains__(self, key: str) -> bool:
        return bool(self._values.get(key))

    def __repr__(self) -> str:
        return f"<Settings {sorted(self._values)}>"


def _expand_vars(value: str) -> str:
    """Expand ``$VAR`` and ``${VAR}`` references; unknown names are left as-is."""

    def _replace(match: re.Match) -> str:
        braced = match.group(1)
        bare = match.group(2)
        original: str = match.group(0) or ""

        if braced is not None:
            if ":-" in braced:
                var_name, default = braced.split(":-", 1)
                return os.environ.get(var_name, default)
            return os.environ.get(braced, original)

        return os.environ.get(bare or "", original)

    return os.path.expanduser(_ENV_VAR_RE.sub(_replace, value))


def load_settings(path: str | Path | None = None) -> Settings:
    """Load :class:`Settings` from YAML.

    The file is looked up at *path*, then ``$REPLAYFORGE_SETTINGS``, then
    ``~/.config/replayforge/settings.yaml``.  A missing file yields empty
    settings so every accessor falls back to its default.

    Raises
    ------
    ValueError
        If the file does not contain a YAML mapping.
    """
    if path is None:
        path = os.environ.get(SETTINGS_ENV_VAR) or DEFAULT_SETTINGS_PATH
    config_path = Path(os.path.expanduser(str(path)))

    if not config_path.exists():
        logger.info("No settings file at %s, using defaults", config_path)
        return Settings()

    logger.info("Loading settings from %s", config_path)
    with open(config_path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)

    if raw is None:
        return Settings()
    if not isinstance(raw, dict):
        raise ValueError(
            f"Expected a YAML mapping in {config_path}, got {type(raw).__name__}"
        )

    return Settings({
        key: _expand_vars(value) if isinstance(value, str) else value
        for key, value in raw.items()
    })
