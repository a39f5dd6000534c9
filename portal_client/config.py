"""
Configuration Management for the Portal API Client.

This module handles client configuration including the backend URL, auth
endpoint paths, credential storage and logging, with support for
configuration files and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser

from portal_shared.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)

STORAGE_BACKENDS = ('auto', 'memory', 'file', 'keyring')


class ClientConfiguration:
    """
    Configuration manager for the Portal API Client.

    Supports configuration from:
    1. Overrides, e.g. command line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path."""
        return str(Path.home() / '.portal-client' / 'client.conf')

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            try:
                self._load_from_file()
                logger.info(f"Configuration loaded from: {self._config_file}")
            except Exception as e:
                logger.warning(f"Failed to load configuration file: {e}")
        else:
            logger.debug(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        config.read(self._config_file)

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # Try to parse as JSON for numbers, booleans and lists
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        env_mappings = {
            'PORTAL_CLIENT_SERVER_URL': ('server', 'url'),
            'PORTAL_CLIENT_API_PREFIX': ('server', 'api_prefix'),
            'PORTAL_CLIENT_TIMEOUT': ('server', 'timeout'),
            'PORTAL_CLIENT_LOGIN_ROUTE': ('auth', 'login_route'),
            'PORTAL_CLIENT_STORAGE_BACKEND': ('storage', 'backend'),
            'PORTAL_CLIENT_STORAGE_PATH': ('storage', 'path'),
            'PORTAL_CLIENT_LOG_LEVEL': ('logging', 'level'),
            'PORTAL_CLIENT_LOG_FILE': ('logging', 'file'),
            'PORTAL_CLIENT_LOG_FORMAT': ('logging', 'format'),
        }

        for env_var, (section, key) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                if section not in self._config_data:
                    self._config_data[section] = {}

                if value.lower() in ('true', 'false'):
                    self._config_data[section][key] = value.lower() == 'true'
                elif value.isdigit():
                    self._config_data[section][key] = int(value)
                else:
                    self._config_data[section][key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'server': {
                'url': 'http://localhost:3000',
                'api_prefix': '/api/v1',
                'timeout': 30.0,
                'user_agent': 'PortalApiClient/1.0',
            },
            'auth': {
                'refresh_path': '/auth/refresh',
                'login_path': '/auth/login',
                'logout_path': '/auth/logout',
                'me_path': '/auth/me',
                'login_route': '/login',
            },
            'storage': {
                'backend': 'auto',
                'path': str(Path.home() / '.portal-client' / 'credentials.enc'),
                'service_name': 'portal-api-client',
            },
            'logging': {
                'level': 'INFO',
                'file': None,
                'format': 'standard',
                'max_size': 10485760,  # 10MB
                'backup_count': 3,
            },
        }

        for section, section_defaults in defaults.items():
            if section not in self._config_data:
                self._config_data[section] = {}

            for key, default_value in section_defaults.items():
                if key not in self._config_data[section]:
                    self._config_data[section][key] = default_value

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_config(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            value: Value to set
        """
        if '.' not in key:
            self._config_data[key] = value
            return

        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value
        """
        self._overrides[key] = value

    def save_configuration(self) -> None:
        """Save current configuration to file."""
        config = ConfigParser()

        for section_name, section_data in self._config_data.items():
            config.add_section(section_name)
            for key, value in section_data.items():
                if value is None:
                    continue
                if isinstance(value, (dict, list, bool)):
                    config.set(section_name, key, json.dumps(value))
                else:
                    config.set(section_name, key, str(value))

        try:
            config_path = Path(self._config_file)
            config_path.parent.mkdir(parents=True, exist_ok=True)

            with open(self._config_file, 'w') as f:
                config.write(f)
        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            raise ConfigurationError(
                f"Failed to save configuration: {e}",
                ErrorCode.CONFIG_FILE_NOT_FOUND,
                cause=e
            )

        logger.info(f"Configuration saved to: {self._config_file}")

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    # Convenience methods for common configuration values

    def get_server_url(self) -> str:
        """Get backend base URL."""
        return str(self.get_config('server.url')).rstrip('/')

    def get_api_prefix(self) -> str:
        """Get the path prefix shared by all API routes, e.g. /api/v1."""
        prefix = str(self.get_config('server.api_prefix') or '')
        return '/' + prefix.strip('/') if prefix.strip('/') else ''

    def get_server_timeout(self) -> float:
        """Get total request timeout in seconds."""
        value = self.get_config('server.timeout', 30.0)
        try:
            timeout = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Invalid timeout value: {value!r}",
                ErrorCode.CONFIG_INVALID_VALUE,
                config_key='server.timeout'
            )
        if timeout <= 0:
            raise ConfigurationError(
                f"Timeout must be positive, got {timeout}",
                ErrorCode.CONFIG_INVALID_VALUE,
                config_key='server.timeout'
            )
        return timeout

    def get_user_agent(self) -> str:
        return self.get_config('server.user_agent', 'PortalApiClient/1.0')

    def get_auth_path(self, name: str) -> str:
        """
        Get a full auth route path including the API prefix.

        Args:
            name: One of 'refresh', 'login', 'logout', 'me'

        Returns:
            Path such as /api/v1/auth/refresh
        """
        path = self.get_config(f'auth.{name}_path')
        if not path:
            raise ConfigurationError(
                f"Unknown auth route: {name}",
                ErrorCode.CONFIG_INVALID_VALUE,
                config_key=f'auth.{name}_path'
            )
        return f"{self.get_api_prefix()}/{str(path).lstrip('/')}"

    def get_login_route(self) -> str:
        """Get the host application's login location."""
        return self.get_config('auth.login_route', '/login')

    def get_storage_backend(self) -> str:
        """Get credential storage backend name."""
        backend = str(self.get_config('storage.backend', 'auto')).lower()
        if backend not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"Unknown storage backend: {backend}",
                ErrorCode.CONFIG_INVALID_VALUE,
                config_key='storage.backend'
            )
        return backend

    def get_storage_path(self) -> str:
        """Get encrypted credential file path."""
        return str(Path(self.get_config('storage.path')).expanduser())

    def get_storage_service_name(self) -> str:
        """Get keyring service name."""
        return self.get_config('storage.service_name', 'portal-api-client')

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_file(self) -> Optional[str]:
        """Get log file path."""
        return self.get_config('logging.file')

    def get_log_format(self) -> str:
        """Get log format name."""
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_log_max_size(self) -> int:
        """Get the size in bytes at which the log file is rotated."""
        return int(self.get_config('logging.max_size', 10485760))

    def get_log_backup_count(self) -> int:
        """Get the number of rotated log files to keep."""
        return int(self.get_config('logging.backup_count', 3))
