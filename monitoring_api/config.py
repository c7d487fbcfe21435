"""
Configuration Module

Environment-driven settings for the monitoring API. Values are read once when
the application is created; every setting has a default except the Bigtable
project and instance identifiers, which are required to open a real client.

Usage:
------
    from monitoring_api.config import Config

    config = Config()
    config.require_store()  # raises ConfigError if the store is not configured
"""

import os


class ConfigError(RuntimeError):
    """Raised when the service cannot start with the current configuration."""


class Config:
    def __init__(self):
        # Bigtable connection
        self.BIGTABLE_PROJECT_ID = os.getenv('BIGTABLE_PROJECT_ID', '')
        self.BIGTABLE_INSTANCE_ID = os.getenv('BIGTABLE_INSTANCE_ID', '')

        # Tables
        self.TABLE_METRICS = os.getenv('BIGTABLE_TABLE_METRICS', 'metrics')
        self.TABLE_LOGS = os.getenv('BIGTABLE_TABLE_LOGS', 'logs')
        self.TABLE_PROCESSING = os.getenv('BIGTABLE_TABLE_PROCESSING', 'processing')

        # Column families
        self.CF_METRICS = os.getenv('BIGTABLE_CF_METRICS', 'metrics')
        self.CF_LOGS = os.getenv('BIGTABLE_CF_LOGS', 'logs')
        self.CF_PROCESSING_LOG = os.getenv('BIGTABLE_CF_PROCESSING_LOG', 'processing_log')
        self.CF_PROCESSING_MESSAGE = os.getenv('BIGTABLE_CF_PROCESSING_MESSAGE', 'processing_message')

        # Store reads
        self.STORE_DEADLINE_SECONDS = float(os.getenv('STORE_DEADLINE_SECONDS', '30'))

        # Cache
        self.CACHE_TTL_SECONDS = float(os.getenv('CACHE_TTL_SECONDS', '30'))
        self.CACHE_MAX_ENTRIES = int(os.getenv('CACHE_MAX_ENTRIES', '512'))

        # HTTP
        self.CORS_ORIGINS = [
            origin.strip()
            for origin in os.getenv('CORS_ORIGINS', '*').split(',')
            if origin.strip()
        ]
        self.LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

    def require_store(self) -> None:
        """Fail fast when the Bigtable coordinates are missing."""
        missing = [
            name for name in ('BIGTABLE_PROJECT_ID', 'BIGTABLE_INSTANCE_ID')
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")

    def __str__(self):
        vars_dict = vars(self)
        config_lines = [f"  {k}: {v}" for k, v in vars_dict.items()]
        return "\n".join(config_lines)
