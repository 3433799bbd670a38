"""
InvoiceChain Configuration Management

This module provides configuration management for InvoiceChain.
"""

import copy
import logging
from typing import Dict, Any, Optional
from pathlib import Path

import yaml

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'default_config.yaml'
USER_CONFIG_PATH = Path.home() / '.invoicechain' / 'config.yaml'


class ChainConfig:
    """
    Manages system-wide configuration for InvoiceChain

    Settings are read from the packaged ``default_config.yaml`` and deep-merged
    with the user's ``~/.invoicechain/config.yaml`` when it exists. A shared
    process-wide instance is available through ``ChainConfig.instance()``.
    """

    _instance: Optional['ChainConfig'] = None

    def __init__(self, config: Optional[Dict[str, Any]] = None, config_file: Optional[Path] = None):
        """
        Initialize configuration

        Args:
            config: Values merged over the defaults
            config_file: Path used by ``save``; defaults to the user config file
        """
        with open(DEFAULT_CONFIG_PATH, 'r') as f:
            self.config: Dict[str, Any] = yaml.safe_load(f)

        self.config_file = Path(config_file) if config_file else USER_CONFIG_PATH

        if config:
            self._update_config_recursive(self.config, config)

    @classmethod
    def instance(cls) -> 'ChainConfig':
        """Get the process-wide configuration, loading the user file once"""
        if cls._instance is None:
            instance = cls()
            if instance.config_file.exists():
                instance._load_config()
            cls._instance = instance
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Forget the process-wide configuration"""
        cls._instance = None

    @classmethod
    def from_file(cls, config_path: str) -> 'ChainConfig':
        """Load configuration from file

        Args:
            config_path: Path to configuration file

        Returns:
            ChainConfig instance
        """
        instance = cls(config_file=Path(config_path))
        instance._load_config()
        return instance

    @classmethod
    def setup(cls, **kwargs) -> 'ChainConfig':
        """
        Set up InvoiceChain configuration and persist it to the user config file

        Args:
            database: Database configuration
                - type: Database type ('sqlite' or 'postgresql')
                - path: Path to SQLite database file
                - postgres: host, port, database, user, password
            storage: Archive storage configuration
            extraction: Extraction model settings
            ledger: Ledger file settings
            chain: Dispatch mode and claim lease
            retry: Retry policy
            worker: Worker polling settings
            logging: Logging configuration
                - level: Logging level
                - file: Path to log file

        Returns:
            The updated process-wide configuration
        """
        instance = cls.instance()

        for section, values in kwargs.items():
            if isinstance(values, dict) and isinstance(instance.config.get(section), dict):
                instance._update_config_recursive(instance.config[section], values)
            else:
                instance.config[section] = values

        instance._validate_config()
        instance.save()

        logger.info("InvoiceChain configuration updated")
        return instance

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value

        Args:
            key: Configuration key (dot notation)
            default: Default value if key not found

        Returns:
            Configuration value
        """
        try:
            value = self.config
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value

        Args:
            key: Configuration key (dot notation)
            value: Configuration value
        """
        keys = key.split('.')
        config = self.config
        for k in keys[:-1]:
            if k not in config or not isinstance(config[k], dict):
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def _load_config(self) -> None:
        """Load configuration from file"""
        if not self.config_file.exists():
            raise RuntimeError(f"Configuration file not found: {self.config_file}")

        try:
            with open(self.config_file, 'r') as f:
                file_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise RuntimeError(f"Invalid YAML in configuration file: {str(e)}")

        if file_config is None:
            raise RuntimeError("Configuration file is empty")

        self._update_config_recursive(self.config, file_config)
        self._validate_config()
        logger.info(f"Configuration loaded from {self.config_file}")

    def _validate_config(self) -> None:
        """Validate configuration structure and values"""
        if not isinstance(self.config, dict):
            raise RuntimeError("Configuration must be a dictionary")

        required_sections = ['database', 'storage', 'chain', 'retry', 'logging']
        for section in required_sections:
            if section not in self.config:
                raise RuntimeError(f"Missing required configuration section: {section}")

        db_type = self.get('database.type')
        if db_type not in ['sqlite', 'postgresql', 'postgres']:
            raise RuntimeError(f"Unsupported database type: {db_type}")
        if db_type == 'sqlite' and not self.get('database.path'):
            raise RuntimeError("SQLite database path not specified")

        storage_type = self.get('storage.type')
        if storage_type not in ['filesystem', 's3']:
            raise RuntimeError(f"Unsupported storage type: {storage_type}")
        if storage_type == 's3' and not self.get('storage.s3.bucket'):
            raise RuntimeError("S3 bucket not specified")

        if self.get('chain.dispatch') not in ['queue', 'inline']:
            raise RuntimeError(f"Unsupported dispatch mode: {self.get('chain.dispatch')}")

        if int(self.get('retry.max_attempts', 0)) < 1:
            raise RuntimeError("retry.max_attempts must be at least 1")
        if float(self.get('retry.delay_seconds', 0)) < 0:
            raise RuntimeError("retry.delay_seconds cannot be negative")

    def _save_config(self) -> None:
        """Save configuration to file"""
        try:
            with open(self.config_file, 'w') as f:
                yaml.dump(self.config, f, default_flow_style=False, sort_keys=False)
            logger.info(f"Configuration saved to {self.config_file}")
        except OSError as e:
            logger.error(f"Failed to save configuration: {str(e)}")
            raise

    def save(self) -> None:
        """Write the configuration to ``config_file``"""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        self._save_config()

    def _update_config_recursive(self, base: Dict[str, Any], update: Dict[str, Any]) -> None:
        """Update configuration recursively"""
        for key, value in update.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._update_config_recursive(base[key], value)
            else:
                base[key] = value

    def update(self, config: Dict[str, Any]) -> None:
        """Deep-merge new configuration values"""
        self._update_config_recursive(self.config, config)

    def get_database_config(self) -> Dict[str, Any]:
        return self.config.get('database', {})

    def get_storage_config(self) -> Dict[str, Any]:
        return self.config.get('storage', {})

    def get_logging_config(self) -> Dict[str, Any]:
        return self.config.get('logging', {})

    def validate(self) -> bool:
        """Validate configuration"""
        try:
            self._validate_config()
            return True
        except RuntimeError as e:
            logger.error(f"Configuration validation failed: {str(e)}")
            return False

    def get_all(self) -> Dict[str, Any]:
        """Get a copy of all configuration"""
        return copy.deepcopy(self.config)
