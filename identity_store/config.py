"""
Configuration loading and management for the identity store.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import logging
from typing import Any, Dict, List, Optional

import yaml

from identity_store.logging_setup import security_logger

logger = logging.getLogger(__name__)

STORE_TYPES = ('file', 'sql', 'ldap')
PASSWORD_ENCODERS = ('plain', 'sha_salted')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of identity store configuration."""

    # Environment variable mappings for secrets
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'sql.url': 'IDENTITY_STORE_DATABASE_URL',
    }

    DEFAULTS = {
        'store': {'type': 'file'},
        'ldap': {
            'use_ssl': None,
            'start_tls': None,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 10,
            'active_directory': False,
            'generate_user_ids': False,
            'max_user_id_length': None,
            'additional_properties': {},
        },
        'file': {
            'working_dir': 'identity-store-data',
            'always_create_files': True,
        },
        'sql': {
            'url': 'sqlite:///identity_store.db',
            'echo': False,
            'create_schema': True,
        },
        'credentials': {
            'encoder': 'plain',
            'strength': 256,
        },
        'logging': {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING',
        },
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses IDENTITY_STORE_CONFIG env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('IDENTITY_STORE_CONFIG', 'config.yaml')
        self.config: Dict[str, Any] = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        return self.process()

    def process(self) -> Dict[str, Any]:
        """Apply overrides, validation and defaults to an already parsed configuration."""
        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        security_logger.log_configuration_access(self.config_path)
        logger.info(f"Configuration loaded successfully from {self.config_path} "
                    f"(store type: {self.config['store']['type']})")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for secrets."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields, collecting every error."""
        errors: List[str] = []

        store_type = (self.config.get('store') or {}).get('type', 'file')
        if store_type not in STORE_TYPES:
            errors.append(f"Invalid store.type: {store_type} (expected one of {', '.join(STORE_TYPES)})")

        if store_type == 'ldap':
            ldap_config = self.config.get('ldap') or {}
            for field in ('server_url', 'bind_dn', 'bind_password',
                          'user_dn_suffix', 'role_dn_suffix', 'group_dn_suffix'):
                if not ldap_config.get(field):
                    errors.append(f"Missing required LDAP field: {field}")

            protocol = ldap_config.get('protocol')
            if protocol and str(protocol).lower() not in ('ssl', 'tls', 'plain'):
                errors.append(f"Invalid ldap.protocol: {protocol}")

            max_length = ldap_config.get('max_user_id_length')
            if max_length is not None and (not isinstance(max_length, int) or max_length < 1):
                errors.append("ldap.max_user_id_length must be a positive integer")

            properties = ldap_config.get('additional_properties')
            if properties is not None and not isinstance(properties, dict):
                errors.append("ldap.additional_properties must be a mapping")

        if store_type == 'file':
            file_config = self.config.get('file') or {}
            if 'always_create_files' in file_config and not isinstance(file_config['always_create_files'], bool):
                errors.append("file.always_create_files must be true or false")

        credentials = self.config.get('credentials') or {}
        encoder = credentials.get('encoder', 'plain')
        if encoder not in PASSWORD_ENCODERS:
            errors.append(f"Invalid credentials.encoder: {encoder}")
        if encoder == 'sha_salted' and credentials.get('strength', 256) not in (1, 256, 384, 512):
            errors.append(f"Invalid credentials.strength: {credentials.get('strength')}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        for section, defaults in self.DEFAULTS.items():
            section_config = self.config.get(section)
            if not isinstance(section_config, dict):
                section_config = self.config[section] = {}
            for key, value in defaults.items():
                section_config.setdefault(key, value.copy() if isinstance(value, dict) else value)

        # None lets the LDAP client derive transport security from protocol and URL scheme
        for key in ('use_ssl', 'start_tls'):
            if self.config['ldap'].get(key) is None:
                del self.config['ldap'][key]


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
