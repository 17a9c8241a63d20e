"""
Configuration Manager for LedgerSync

Loads sync settings from the root config.json and Xero credentials from
environment variables.
"""
import copy
import json
import os
from pathlib import Path
from typing import Dict, List, Optional, Any
from urllib.parse import quote_plus
import logging

logger = logging.getLogger(__name__)

# Default configuration file location
DEFAULT_CONFIG_PATH = Path(os.getenv("LEDGERSYNC_CONFIG", Path(__file__).parent.parent / "config.json"))

DEFAULT_CONFIG: Dict[str, Any] = {
    "entities": {
        "contacts": {"enabled": True, "include_archived": False},
        "invoices": {"enabled": True, "page_size": 100},
        "payments": {"enabled": True},
    },
    "global_settings": {
        "default_currency": "SGD",
        "default_tax_type": "OUTPUT2",
        "default_account_code": "200",
        "token_refresh_minutes": 20,
        "status_cache_ttl_seconds": 120,
        "status_negative_ttl_seconds": 30,
        "status_failure_ttl_seconds": 60,
        "status_min_interval_seconds": 30,
    },
}


class SyncConfig:
    """Per-entity sync switches and options."""

    def __init__(self, config_data: Dict[str, Any]):
        self.data = config_data
        self.entities = config_data.get("entities", {})
        self.global_settings = config_data.get("global_settings", {})

    def _entity(self, name: str) -> Dict[str, Any]:
        entity = self.entities.get(name, {})
        return entity if isinstance(entity, dict) else {}

    @property
    def contacts_enabled(self) -> bool:
        return self._entity("contacts").get("enabled", True)

    @property
    def invoices_enabled(self) -> bool:
        return self._entity("invoices").get("enabled", True)

    @property
    def payments_enabled(self) -> bool:
        return self._entity("payments").get("enabled", True)

    @property
    def include_archived_contacts(self) -> bool:
        return self._entity("contacts").get("include_archived", False)

    @property
    def invoice_page_size(self) -> int:
        return int(self._entity("invoices").get("page_size", 100))

    @property
    def default_currency(self) -> str:
        return self.get_global_setting("default_currency", "SGD")

    @property
    def default_tax_type(self) -> str:
        return self.get_global_setting("default_tax_type", "OUTPUT2")

    @property
    def default_account_code(self) -> str:
        return str(self.get_global_setting("default_account_code", "200"))

    def enabled_entities(self) -> List[str]:
        """Enabled entity names in sync order."""
        flags = [
            ("contacts", self.contacts_enabled),
            ("invoices", self.invoices_enabled),
            ("payments", self.payments_enabled),
        ]
        return [name for name, enabled in flags if enabled]

    def get_global_setting(self, key: str, default: Any = None) -> Any:
        return self.global_settings.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return self.data


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigManager:
    """Manages application configuration."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        self.config_data: Dict[str, Any] = {}
        self.sync_config = SyncConfig({})
        self._load_config()

    def _load_config(self):
        """Load configuration from JSON file, layered over the defaults."""
        if not self.config_path.exists():
            logger.info(f"No configuration file at {self.config_path}, using defaults")
            self.config_data = copy.deepcopy(DEFAULT_CONFIG)
        else:
            try:
                with open(self.config_path, 'r') as f:
                    self.config_data = _merge(DEFAULT_CONFIG, json.load(f))
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in configuration file: {e}")
            logger.info(f"Loaded configuration from {self.config_path}")

        self.sync_config = SyncConfig(self.config_data)

    def get_global_setting(self, key: str, default: Any = None) -> Any:
        """Get a global setting value."""
        return self.sync_config.get_global_setting(key, default)

    def reload(self):
        """Reload configuration from file."""
        self._load_config()


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_path: Optional[Path] = None) -> ConfigManager:
    """Get or create the global configuration manager."""
    global _config_manager
    if _config_manager is None or config_path is not None:
        _config_manager = ConfigManager(config_path)
    return _config_manager


def get_sync_config() -> SyncConfig:
    """Convenience function to get the sync configuration."""
    return get_config_manager().sync_config


# Environment variables configuration
class EnvConfig:
    """Manages environment variables."""

    DEFAULT_SCOPES = (
        "offline_access accounting.transactions accounting.contacts "
        "accounting.settings.read"
    )

    @staticmethod
    def get_xero_credentials() -> tuple[str, str, str, List[str]]:
        """Get Xero client id, secret, redirect URI and scopes."""
        client_id = os.getenv("XERO_CLIENT_ID")
        client_secret = os.getenv("XERO_CLIENT_SECRET")
        redirect_uri = os.getenv("XERO_REDIRECT_URI")
        if not client_id or not client_secret or not redirect_uri:
            raise ValueError("XERO_CLIENT_ID, XERO_CLIENT_SECRET and XERO_REDIRECT_URI must be set")
        scopes = os.getenv("XERO_SCOPES", EnvConfig.DEFAULT_SCOPES).split()
        return client_id, client_secret, redirect_uri, scopes

    @staticmethod
    def get_database_url() -> str:
        """Get database connection URL, built from POSTGRES_* parts when DATABASE_URL is unset."""
        url = os.getenv("DATABASE_URL")
        if url:
            return url
        user = os.getenv("POSTGRES_USER", "ledgersync")
        # URL encode password to handle special characters
        password = quote_plus(os.getenv("POSTGRES_PASSWORD", "changeme"))
        host = os.getenv("POSTGRES_HOST", "localhost")
        port = os.getenv("POSTGRES_PORT", "5432")
        db = os.getenv("POSTGRES_DB", "ledgersync")
        return f"postgresql://{user}:{password}@{host}:{port}/{db}"
