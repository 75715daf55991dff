"""Configuration management for the agent."""

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError
from ruamel.yaml import YAML

from horizon.models.config import HorizonConfig
from horizon.models.snapshot import ConfigSnapshot


logger = logging.getLogger(__name__)

MAIN_CONFIG = "config.yaml"
SYSTEM_CONFIG = "system.yaml"


class ConfigManager:
    """Loads agent settings and the desired system snapshot."""

    def __init__(self, config_dir: Path):
        """Initialize configuration manager."""
        self.config_dir = Path(config_dir)
        self.yaml = YAML(typ="safe")
        self.config: Optional[HorizonConfig] = None
        self.desired: Optional[ConfigSnapshot] = None
        self._config_hashes: Dict[str, str] = {}

    async def load(self):
        """Load all configuration files."""
        logger.info(f"Loading configuration from {self.config_dir}")
        await self._load_main_config()
        await self.load_desired()
        logger.info("Configuration loaded successfully")

    async def _load_main_config(self):
        """Load main configuration file; defaults apply when it is absent."""
        config_file = self.config_dir / MAIN_CONFIG
        if not config_file.exists():
            logger.warning(f"Main config not found, using defaults: {config_file}")
            self._config_hashes.pop(str(config_file), None)
            self.config = HorizonConfig()
            return

        try:
            data = await self._read_yaml(config_file)
            self.config = HorizonConfig(**data)
            logger.debug(f"Loaded main config: {config_file}")
        except ValidationError as e:
            logger.error(f"Invalid main config: {e}")
            raise

    async def load_desired(self) -> Optional[ConfigSnapshot]:
        """Load the desired system snapshot from system.yaml."""
        system_file = self.config_dir / SYSTEM_CONFIG
        if not system_file.exists():
            logger.warning(f"System config not found: {system_file}")
            self._config_hashes.pop(str(system_file), None)
            self.desired = None
            return None

        try:
            data = await self._read_yaml(system_file)
            self.desired = ConfigSnapshot.model_validate(data)
            logger.debug(f"Loaded desired system state: {system_file}")
        except ValidationError as e:
            logger.error(f"Invalid system config: {e}")
            raise
        return self.desired

    async def _read_yaml(self, file_path: Path) -> Dict[str, Any]:
        """Read and parse YAML file."""
        content = await asyncio.to_thread(file_path.read_text)
        # Store hash for change detection
        self._config_hashes[str(file_path)] = hashlib.md5(content.encode()).hexdigest()
        return self.yaml.load(content) or {}

    async def watch_for_changes(self) -> bool:
        """Check if configuration files have changed since the last load."""
        for yaml_file in (self.config_dir / MAIN_CONFIG, self.config_dir / SYSTEM_CONFIG):
            key = str(yaml_file)
            if not yaml_file.exists():
                if key in self._config_hashes:
                    return True
                continue
            content = await asyncio.to_thread(yaml_file.read_text)
            current_hash = hashlib.md5(content.encode()).hexdigest()
            if self._config_hashes.get(key) != current_hash:
                return True
        return False
