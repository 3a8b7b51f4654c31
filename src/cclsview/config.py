"""
Configuration of the ccls client layer, read off a YAML file or a host-provided mapping.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Self

import yaml
from sensai.util import logging
from sensai.util.string import ToStringMixin

from cclsview.constants import CCLSVIEW_CONFIG_FILE, DEFAULT_STATUS_UPDATE_INTERVAL_MS

log = logging.getLogger(__name__)


def _flatten(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """
    Turns nested mappings into dotted keys, e.g. {"launch": {"autoRestart": True}} into {"launch.autoRestart": True}.
    """
    result: dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            result.update(_flatten(value, prefix=dotted + "."))
        else:
            result[dotted] = value
    return result


@dataclass(kw_only=True)
class CclsViewConfig(ToStringMixin):
    launch_auto_restart: bool = True
    launch_notify_on_crash: bool = True
    status_update_interval_ms: int = DEFAULT_STATUS_UPDATE_INTERVAL_MS
    call_hierarchy_qualified: bool = True
    inheritance_hierarchy_qualified: bool = True
    cache_directory: str = ".ccls-cache"
    raw: dict[str, Any] = field(default_factory=dict)
    """all settings by dotted key, including ones not interpreted here"""

    _KEYS = {
        "launch.autoRestart": "launch_auto_restart",
        "launch.notifyOnCrash": "launch_notify_on_crash",
        "statusUpdateInterval": "status_update_interval_ms",
        "callHierarchy.qualified": "call_hierarchy_qualified",
        "inheritanceHierarchy.qualified": "inheritance_hierarchy_qualified",
        "cache.directory": "cache_directory",
    }

    def _tostring_excludes(self) -> list[str]:
        return ["raw"]

    def __post_init__(self) -> None:
        if self.status_update_interval_ms <= 0:
            raise ValueError(f"statusUpdateInterval must be positive, got {self.status_update_interval_ms}")

    @property
    def status_update_interval(self) -> float:
        """
        :return: the status polling interval in seconds
        """
        return self.status_update_interval_ms / 1000.0

    def get(self, key: str, default: Any = None) -> Any:
        """
        Looks up a setting by its dotted name, e.g. "launch.autoRestart".
        """
        attribute = self._KEYS.get(key)
        if attribute is not None:
            return getattr(self, attribute)
        return self.raw.get(key, default)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Self:
        flat = _flatten(data or {})
        kwargs = {attribute: flat[key] for key, attribute in cls._KEYS.items() if key in flat}
        unknown = sorted(set(flat) - set(cls._KEYS))
        if unknown:
            log.debug(f"Settings not interpreted by cclsview: {unknown}")
        return cls(raw=flat, **kwargs)

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> Self:
        with open(yaml_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if data is not None and not isinstance(data, dict):
            raise ValueError(f"Configuration file {yaml_path} must contain a mapping")
        return cls.from_dict(data)

    @classmethod
    def load(cls, yaml_path: str | Path | None = None) -> Self:
        """
        Loads the configuration from the given file or, if None, from the user configuration file;
        a missing user configuration file yields the defaults.
        """
        if yaml_path is not None:
            return cls.from_yaml(yaml_path)
        if os.path.exists(CCLSVIEW_CONFIG_FILE):
            log.info(f"Loading configuration from {CCLSVIEW_CONFIG_FILE}")
            return cls.from_yaml(CCLSVIEW_CONFIG_FILE)
        log.info(f"No configuration file found at {CCLSVIEW_CONFIG_FILE}; using defaults")
        return cls()
