"""
Configuration for the modelbridge relay and its front-end clients.
Values are layered: defaults, environment overrides, user JSON file, env vars.
"""

import copy
import json
import logging
import os
from typing import Any, Dict, List, Optional, cast

from utils.config_schema import (
    AppConfig,
    DEFAULT_CONFIG,
    ENV_OVERRIDES,
    DiscoverySettings,
    LoggingSettings,
    ModelSettings,
    RelaySettings,
)
from utils.env_loader import ENV_NAME_VAR, EnvLoadResult, load_project_env

logger = logging.getLogger('modelbridge.config')


class Config:
    """Configuration manager for the relay process and its clients."""

    def __init__(self, env: Optional[str] = None, config_path: Optional[str] = None):
        """
        Initialize configuration for ``env``.
        If env is None, MODELBRIDGE_ENV (possibly loaded from a .env file) is used,
        defaulting to 'development'.
        """
        self.env_bootstrap: EnvLoadResult = load_project_env(env)
        self.loaded_env_files = self.env_bootstrap.loaded_files

        self.env = (
            env
            or self.env_bootstrap.resolved_env
            or os.environ.get(ENV_NAME_VAR)
            or 'development'
        )

        # Deep copy so DEFAULT_CONFIG is never mutated by set()
        self.config: AppConfig = copy.deepcopy(DEFAULT_CONFIG)

        if self.env in ENV_OVERRIDES:
            self._merge_configs(self.config, copy.deepcopy(ENV_OVERRIDES[self.env]))

        self.config_path = config_path or os.environ.get('MODELBRIDGE_CONFIG')
        if self.config_path:
            self._load_user_config()

        self._apply_runtime_env_overrides()

        logger.debug("Configuration initialized for environment: %s", self.env)

    def _load_user_config(self):
        """Load the user's JSON configuration file and merge it."""
        try:
            with open(self.config_path, 'r') as f:
                user_config = json.load(f)
        except FileNotFoundError:
            logger.warning("User configuration file not found: %s", self.config_path)
            return
        except json.JSONDecodeError:
            logger.error("Error decoding JSON in user configuration file: %s", self.config_path)
            return

        if not isinstance(user_config, dict):
            logger.error("User configuration must be a JSON object: %s", self.config_path)
            return

        self._merge_configs(self.config, user_config)
        logger.info("Loaded user configuration from %s", self.config_path)

    def _merge_configs(self, base_config: Dict[str, Any], override_config: Dict[str, Any]):
        """Recursively merge ``override_config`` into ``base_config``."""
        for key, value in override_config.items():
            if key in base_config and isinstance(base_config[key], dict) and isinstance(value, dict):
                self._merge_configs(base_config[key], value)
            else:
                base_config[key] = value

    def _apply_runtime_env_overrides(self) -> None:
        """Apply MODELBRIDGE_* environment variables on top of the file layers."""

        host = os.environ.get('MODELBRIDGE_RELAY_HOST', '').strip()
        if host:
            self.set('relay.host', host)

        port = self._parse_port(os.environ.get('MODELBRIDGE_RELAY_PORT'))
        if port is not None:
            self.set('relay.port', port)

        for env_key, config_key in (
            ('MODELBRIDGE_AUTO_RECLAIM', 'relay.auto_reclaim'),
            ('MODELBRIDGE_AUTO_OPEN', 'relay.auto_open'),
        ):
            raw = os.environ.get(env_key)
            if raw is None:
                continue
            parsed = self._parse_bool(raw)
            if parsed is None:
                if raw.strip():
                    logger.warning("Invalid %s value: %s", env_key, raw)
                continue
            self.set(config_key, parsed)

        raw_ports = os.environ.get('MODELBRIDGE_DISCOVERY_PORTS', '').strip()
        if raw_ports:
            ports = self._parse_port_list(raw_ports)
            if ports:
                self.set('discovery.candidate_ports', ports)
            else:
                logger.warning("Ignoring MODELBRIDGE_DISCOVERY_PORTS without valid ports: %s", raw_ports)

        upstream = self._normalise_url(os.environ.get('MODELBRIDGE_UPSTREAM_URL', ''))
        if upstream:
            self.set('relay.upstream_url', upstream)

        if os.environ.get('USE_MOCK_LLM') == '1':
            self.set('model.use_mock', True)

    @staticmethod
    def _normalise_url(value: str) -> str:
        if not value:
            return ''
        return value.strip().rstrip('/')

    @staticmethod
    def _parse_bool(value: Optional[str]) -> Optional[bool]:
        """Parse boolean-like environment overrides."""

        if value is None:
            return None

        lowered = str(value).strip().lower()
        if lowered in {'1', 'true', 'yes', 'on'}:
            return True
        if lowered in {'0', 'false', 'no', 'off'}:
            return False

        return None

    @staticmethod
    def _parse_port(value: Optional[str]) -> Optional[int]:
        if value is None or not str(value).strip():
            return None
        try:
            port = int(str(value).strip())
        except ValueError:
            logger.warning("Invalid port value: %s", value)
            return None
        if not 1 <= port <= 65535:
            logger.warning("Port out of range: %s", value)
            return None
        return port

    def _parse_port_list(self, raw_value: str) -> List[int]:
        """Parse comma- or JSON-delimited port lists, keeping order and dropping duplicates."""

        try:
            loaded = json.loads(raw_value)
        except json.JSONDecodeError:
            entries: List[Any] = raw_value.replace('\n', ',').split(',')
        else:
            entries = list(loaded) if isinstance(loaded, (list, tuple)) else [loaded]

        ports: List[int] = []
        for entry in entries:
            port = self._parse_port(str(entry))
            if port is not None and port not in ports:
                ports.append(port)
        return ports

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value by dot-separated key path.
        E.g., config.get('relay.port')
        """
        value: Any = self.config
        try:
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any):
        """
        Set a configuration value by dot-separated key path.
        E.g., config.set('relay.port', 8080)
        """
        keys = key.split('.')
        config: Any = self.config
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    @property
    def is_development(self) -> bool:
        return self.env == 'development'

    @property
    def is_testing(self) -> bool:
        return self.env == 'testing'

    @property
    def is_production(self) -> bool:
        return self.env == 'production'

    @property
    def relay_settings(self) -> RelaySettings:
        return cast(RelaySettings, self.config['relay'])

    @property
    def discovery_settings(self) -> DiscoverySettings:
        return cast(DiscoverySettings, self.config['discovery'])

    @property
    def model_settings(self) -> ModelSettings:
        return cast(ModelSettings, self.config['model'])

    @property
    def logging_settings(self) -> LoggingSettings:
        return cast(LoggingSettings, self.config['logging'])


_config: Optional[Config] = None


def get_config() -> Config:
    """Return the process configuration, creating it on first use."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config() -> None:
    """Forget the cached process configuration (used by tests)."""
    global _config
    _config = None
