"""Local configuration manager for the random IIIF display.

User-editable values live in a local `config.json` file, deep-merged over
`DEFAULT_CONFIG_JSON`. Display options are resolved once into a frozen
`DisplaySettings` by `resolve_display_settings`; callers should never re-derive
defaults on their own.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Final

from .logger import get_logger

logger = get_logger(__name__)

IDENTIFIER_PLACEHOLDER: Final = "{identifier}"
DEFAULT_SELECTION_RULES: Final = "1 => 1\n2 => 2\n3+ => random(2-last-1)"

DEFAULT_CONFIG_JSON: dict[str, Any] = {
    "paths": {
        "logs_dir": "data/local/logs",
        "database": "data/local/iiif_random.db",
    },
    "settings": {
        "system": {
            "request_timeout": 20,
            "fetch_workers": 4,
        },
        "display": {
            "number_of_images": 5,
            "image_size": 800,
            "selection_rules": DEFAULT_SELECTION_RULES,
            "v3_item_url_pattern": None,
            "carousel_duration": 10,
            "cron_interval": 86400,
        },
        "logging": {
            "level": "INFO",
        },
    },
}


def _deep_merge(dst: dict[str, Any], src: dict[str, Any]) -> dict[str, Any]:
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


def _try_make_parent_writable(path: Path) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        test = path.parent / ".write_test"
        test.write_text("ok", encoding="utf-8")
        test.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def default_config_path() -> Path:
    """Pick a sensible config.json location.

    Priority:
    1) `./config.json` if writable
    2) `~/.iiif-random-display/config.json`
    """
    cwd_candidate = Path.cwd() / "config.json"
    if _try_make_parent_writable(cwd_candidate):
        return cwd_candidate

    return Path.home() / ".iiif-random-display" / "config.json"


def validate_item_url_pattern(pattern: str | None) -> str | None:
    """Return the cleaned identifier URL template, or None when blank.

    Raises ValueError if a non-empty template lacks the `{identifier}` placeholder.
    """
    cleaned = (pattern or "").strip()
    if not cleaned:
        return None
    if IDENTIFIER_PLACEHOLDER not in cleaned:
        raise ValueError(f"URL pattern must contain the {IDENTIFIER_PLACEHOLDER} placeholder: {cleaned}")
    return cleaned


@dataclass
class ConfigManager:
    """Manages reading and writing the local config.json file."""

    path: Path
    _data: dict[str, Any]

    @classmethod
    def load(cls, path: Path | None = None) -> ConfigManager:
        """Load the configuration from disk, creating defaults if necessary."""
        cfg_path = path or default_config_path()
        data: dict[str, Any] = json.loads(json.dumps(DEFAULT_CONFIG_JSON))

        if cfg_path.exists():
            try:
                loaded = json.loads(cfg_path.read_text(encoding="utf-8") or "{}")
                if isinstance(loaded, dict):
                    _deep_merge(data, loaded)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Failed to read config.json at %s: %s", cfg_path, exc)
        else:
            try:
                cfg_path.parent.mkdir(parents=True, exist_ok=True)
                cfg_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            except OSError as exc:
                logger.warning("Unable to create default config.json at %s: %s", cfg_path, exc)

        return cls(path=cfg_path, _data=data)

    @property
    def data(self) -> dict[str, Any]:
        """Get the full config data dictionary."""
        return self._data

    def save(self) -> None:
        """Persist the current config data to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._data, indent=2, ensure_ascii=False), encoding="utf-8")

    def set_logs_dir(self, value: str) -> None:
        """Set the logs directory path."""
        self._data.setdefault("paths", {})["logs_dir"] = (value or "data/local/logs").strip()

    def set_database_path(self, value: str) -> None:
        """Set the SQLite database file path."""
        self._data.setdefault("paths", {})["database"] = (value or "data/local/iiif_random.db").strip()

    def resolve_path(self, key: str, default_rel: str) -> Path:
        """Resolve a path from config, making it absolute."""
        raw = (self._data.get("paths", {}) or {}).get(key) or default_rel
        p = Path(str(raw)).expanduser()
        if p.is_absolute():
            return p
        # Relative paths are resolved relative to the execution directory
        return (Path.cwd() / p).resolve()

    def get_setting(self, dotted_path: str, default: Any = None) -> Any:
        """Read a nested value from `settings` using a dotted path.

        Example: `get_setting("display.image_size", 800)`.
        """
        node: Any = self._data.get("settings", {}) or {}
        for part in (dotted_path or "").split("."):
            if not part:
                continue
            if not isinstance(node, dict):
                return default
            node = node.get(part)
        return default if node is None else node

    def set_setting(self, dotted_path: str, value: Any) -> None:
        """Set a nested value in `settings` using a dotted path."""
        if not dotted_path:
            return

        root = self._data.setdefault("settings", {})
        if not isinstance(root, dict):
            self._data["settings"] = {}
            root = self._data["settings"]

        parts = [p for p in dotted_path.split(".") if p]
        node: dict[str, Any] = root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def get_logs_dir(self) -> Path:
        """Get the logs directory path."""
        path = self.resolve_path("logs_dir", "data/local/logs")
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_database_path(self) -> Path:
        """Get the SQLite database path (parent directory is created)."""
        path = self.resolve_path("database", "data/local/iiif_random.db")
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


@dataclass(frozen=True)
class DisplaySettings:
    """Display and fetch options consumed by the pipeline, with defaults applied."""

    number_of_images: int = 5
    image_size: int = 800
    selection_rules: str = DEFAULT_SELECTION_RULES
    v3_item_url_pattern: str | None = None
    carousel_duration: int = 10
    cron_interval: int = 86400
    request_timeout: int = 20
    fetch_workers: int = 4


def _positive_int(cm: ConfigManager, dotted_path: str, default: int) -> int:
    raw = cm.get_setting(dotted_path)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid value for %s (%r); using default %s", dotted_path, raw, default)
        return default
    if value < 1:
        logger.warning("Value for %s must be >= 1 (got %s); using default %s", dotted_path, value, default)
        return default
    return value


def _text(cm: ConfigManager, dotted_path: str, default: str | None) -> str | None:
    raw = cm.get_setting(dotted_path)
    if raw is None:
        return default
    text = str(raw)
    return text if text.strip() else default


def resolve_display_settings(cm: ConfigManager | None = None) -> DisplaySettings:
    """Resolve every display option to its configured value or documented default."""
    cm = cm or get_config_manager()

    pattern = _text(cm, "display.v3_item_url_pattern", None)
    try:
        pattern = validate_item_url_pattern(pattern)
    except ValueError as exc:
        logger.warning("Ignoring v3 item URL pattern: %s", exc)
        pattern = None

    return DisplaySettings(
        number_of_images=_positive_int(cm, "display.number_of_images", 5),
        image_size=_positive_int(cm, "display.image_size", 800),
        selection_rules=_text(cm, "display.selection_rules", DEFAULT_SELECTION_RULES) or DEFAULT_SELECTION_RULES,
        v3_item_url_pattern=pattern,
        carousel_duration=_positive_int(cm, "display.carousel_duration", 10),
        cron_interval=_positive_int(cm, "display.cron_interval", 86400),
        request_timeout=_positive_int(cm, "system.request_timeout", 20),
        fetch_workers=_positive_int(cm, "system.fetch_workers", 4),
    )


@lru_cache(maxsize=1)
def get_config_manager() -> ConfigManager:
    """Get the singleton config manager."""
    return ConfigManager.load()
