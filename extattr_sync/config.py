"""
Configuration loading and management for Extension Attribute Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

CONNECT_MODES = ('lazy', 'eager')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive and tenant-specific fields
    ENV_OVERRIDES = {
        'tenant.tenant_id': 'EXTATTR_TENANT_ID',
        'tenant.client_id': 'EXTATTR_CLIENT_ID',
        'tenant.client_secret': 'EXTATTR_CLIENT_SECRET',
        'tenant.certificate_path': 'EXTATTR_CERTIFICATE_PATH',
        'tenant.certificate_password': 'EXTATTR_CERTIFICATE_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    DEFAULTS = {
        'tenant': {
            'authority_host': 'https://login.microsoftonline.com',
        },
        'graph': {
            'base_url': 'https://graph.microsoft.com/v1.0',
            'scope': 'https://graph.microsoft.com/.default',
            'authority_conflict_message': 'originated within an external service',
            'authority_conflict_codes': [],
            'verify_ssl': True,
            'timeout_seconds': 30,
        },
        'exchange': {
            'enabled': True,
            'base_url': 'https://outlook.office365.com/adminapi/beta',
            'scope': 'https://outlook.office365.com/.default',
            'recipient_cmdlet': 'Set-Recipient',
            'mailbox_cmdlet': 'Set-Mailbox',
            'connect_mode': 'lazy',
            'verify_ssl': True,
            'timeout_seconds': 30,
        },
        'input': {
            'identifier_column': 'UserPrincipalName',
            'delimiter': ',',
            'empty_means_clear': False,
        },
        'logging': {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'INFO',
        },
        'error_handling': {
            'max_retries': 2,
            'retry_wait_seconds': 2,
            'retry_backoff': 2.0,
        },
        'notifications': {
            'enable_email': False,
            'email_on_failure': True,
            'smtp_port': 587,
            'smtp_tls': True,
        },
    }

    def __init__(self, config_path: Optional[str] = None, skip_connect: bool = False):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
            skip_connect: Sessions are supplied out-of-band, so tenant credentials are optional
        """
        self.explicit_path = config_path is not None or 'CONFIG_PATH' in os.environ
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.skip_connect = skip_connect
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        A missing default config file is tolerated so the tool can run from
        environment variables alone; an explicitly named file must exist.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            if self.explicit_path:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            logger.debug(f"No configuration file at {self.config_path}, using environment only")
            self.config = {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
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

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        for section, defaults in self.DEFAULTS.items():
            section_config = self.config.get(section)
            if section_config is None:
                section_config = self.config[section] = {}
            if not isinstance(section_config, dict):
                raise ConfigurationError(f"Configuration section '{section}' must be a mapping")
            for key, value in defaults.items():
                section_config.setdefault(key, list(value) if isinstance(value, list) else value)

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        tenant = self.config['tenant']
        exchange = self.config['exchange']

        if not self.skip_connect:
            for field in ('tenant_id', 'client_id'):
                if not tenant.get(field):
                    errors.append(f"Missing required tenant field: {field}")
            if not tenant.get('client_secret') and not tenant.get('certificate_path'):
                errors.append("Either tenant.client_secret or tenant.certificate_path is required")

        if exchange.get('enabled') and not tenant.get('tenant_id'):
            errors.append("tenant.tenant_id is required for the Exchange fallback")

        for section in ('graph', 'exchange'):
            if not str(self.config[section].get('base_url', '')).startswith(('https://', 'http://')):
                errors.append(f"{section}.base_url must be an http(s) URL")

        if exchange.get('connect_mode') not in CONNECT_MODES:
            errors.append(f"exchange.connect_mode must be one of: {', '.join(CONNECT_MODES)}")

        codes = self.config['graph'].get('authority_conflict_codes')
        if not isinstance(codes, list):
            errors.append("graph.authority_conflict_codes must be a list")

        if not self.config['graph'].get('authority_conflict_message') and not codes:
            errors.append("Either graph.authority_conflict_message or "
                          "graph.authority_conflict_codes must be set")

        error_handling = self.config['error_handling']
        try:
            if int(error_handling.get('max_retries')) < 0:
                errors.append("error_handling.max_retries must not be negative")
        except (TypeError, ValueError):
            errors.append("error_handling.max_retries must be an integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))


def load_config(config_path: Optional[str] = None, skip_connect: bool = False) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file
        skip_connect: Tenant credentials are not required

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path, skip_connect=skip_connect)
    return loader.load()
