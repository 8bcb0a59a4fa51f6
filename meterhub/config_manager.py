"""
Configuration Manager for meterhub

Loads config.yaml (and the optional separate devices file) into HubConfig and
watches both files for changes.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import yaml
from pydantic import ValidationError

from meterhub.config import DevicesConfig, HubConfig
from meterhub.errors import ConfigurationError, ExitCode

log = logging.getLogger(__name__)


class ConfigurationManager:
    """Loads and reloads the hub configuration from YAML files."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config_cache: Optional[HubConfig] = None
        self._mtimes: Dict[Path, Optional[float]] = {}

    def load_config(self) -> HubConfig:
        """Load config.yaml; the devices section comes from devices_file when one is set."""
        log.info(f"Loading configuration from {self.config_path}")
        config_dict = self._read_yaml(self.config_path)
        try:
            config = HubConfig(**config_dict)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {self.config_path}: {e}",
                                     exit_code=ExitCode.STARTUP_FAILURE) from e

        if config.devices_file:
            config = config.model_copy(update={"devices": self.load_devices(config)})

        self._config_cache = config
        self._remember_mtimes()
        return config

    def load_devices(self, config: HubConfig) -> DevicesConfig:
        path = self.devices_path(config)
        data = self._read_yaml(path)
        # The file may hold the section itself or wrap it in `devices:`
        if "devices" in data and not {"nodes", "channels"} & data.keys():
            data = data["devices"] or {}
        try:
            devices = DevicesConfig(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid device description in {path}: {e}",
                                     exit_code=ExitCode.STARTUP_FAILURE) from e
        log.info(f"Loaded {len(devices.nodes)} nodes from {path}")
        return devices

    def devices_path(self, config: HubConfig) -> Optional[Path]:
        if not config.devices_file:
            return None
        path = Path(config.devices_file)
        if not path.is_absolute():
            path = self.config_path.parent / path
        return path

    def reload_config(self) -> HubConfig:
        log.info("Reloading configuration")
        self._config_cache = None
        return self.load_config()

    @property
    def config(self) -> HubConfig:
        if self._config_cache is None:
            return self.load_config()
        return self._config_cache

    def watched_files(self) -> List[Path]:
        files = [self.config_path]
        if self._config_cache is not None:
            devices = self.devices_path(self._config_cache)
            if devices is not None:
                files.append(devices)
        return files

    def has_changed(self) -> bool:
        """True when a watched file's modification time differs from the last load."""
        for path in self.watched_files():
            if self._mtime(path) != self._mtimes.get(path):
                return True
        return False

    async def watch(self, callback: Callable[[], Awaitable[Any]], interval_secs: float = 5.0):
        """Poll the watched files and await callback() once per detected change."""
        log.info(f"Watching {', '.join(str(p) for p in self.watched_files())} for changes")
        while True:
            await asyncio.sleep(interval_secs)
            if not self.has_changed():
                continue
            log.info("Configuration file change detected")
            self._remember_mtimes()
            try:
                await callback()
            except Exception as e:
                log.error(f"Configuration change handler failed: {e}", exc_info=True)

    def _remember_mtimes(self):
        self._mtimes = {path: self._mtime(path) for path in self.watched_files()}

    @staticmethod
    def _mtime(path: Path) -> Optional[float]:
        try:
            return path.stat().st_mtime
        except FileNotFoundError:
            return None

    @staticmethod
    def _read_yaml(path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}",
                                     exit_code=ExitCode.STARTUP_FAILURE)
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {path}: {e}",
                                     exit_code=ExitCode.STARTUP_FAILURE) from e
        return data or {}
