"""
Configuration management and loading.

Collects the storage, cache and table settings into a single
validated object passed to the catalog and the ledger.
"""

import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict

import yaml

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class LimiterConfig:
    """Complete limiter configuration."""
    db_path: str = "usage_limiter.db"
    db_timeout: float = 5.0
    cache_store: str = "memory"
    cache_key: str = "usage_limiter.limits.cache"
    cache_expiration: int = 86400
    limits_table_name: str = "limits"
    pivot_table_name: str = "model_has_limits"
    relationship_name: str = "model"

    def __post_init__(self):
        """Validate values that end up in SQL or cache calls."""
        if not self.db_path:
            raise ValueError("db_path must not be empty")
        if self.db_timeout <= 0:
            raise ValueError("db_timeout must be > 0")
        if not self.cache_key:
            raise ValueError("cache_key must not be empty")
        if self.cache_expiration <= 0:
            raise ValueError("cache_expiration must be > 0")
        for field_name in ("limits_table_name", "pivot_table_name", "relationship_name"):
            value = getattr(self, field_name)
            if not isinstance(value, str) or not _IDENTIFIER.match(value):
                raise ValueError(f"{field_name} must be a valid SQL identifier, got {value!r}")
        if self.limits_table_name == self.pivot_table_name:
            raise ValueError("limits_table_name and pivot_table_name must differ")

    @property
    def model_type_column(self) -> str:
        return f"{self.relationship_name}_type"

    @property
    def model_id_column(self) -> str:
        return f"{self.relationship_name}_id"

    def with_db_path(self, db_path: str) -> "LimiterConfig":
        """Return a copy pointing at another database file."""
        return replace(self, db_path=db_path)


DEFAULT_CONFIG = LimiterConfig()


def load_limiter_config(path: str) -> LimiterConfig:
    """Load and validate limiter configuration from YAML file.

    Unknown keys are rejected so that typos never fall back silently
    to defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated LimiterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Limiter config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'database', 'cache', 'tables', 'relationship'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    values: Dict[str, Any] = {}

    database = _section(raw_config, 'database', {'path', 'timeout'})
    if 'path' in database:
        values['db_path'] = str(database['path'])
    if 'timeout' in database:
        values['db_timeout'] = _positive_number(database['timeout'], 'database.timeout')

    cache = _section(raw_config, 'cache', {'store', 'key', 'expiration'})
    if 'store' in cache:
        values['cache_store'] = str(cache['store'])
    if 'key' in cache:
        values['cache_key'] = str(cache['key'])
    if 'expiration' in cache:
        values['cache_expiration'] = int(_positive_number(cache['expiration'], 'cache.expiration'))

    tables = _section(raw_config, 'tables', {'limits', 'model_has_limits'})
    if 'limits' in tables:
        values['limits_table_name'] = tables['limits']
    if 'model_has_limits' in tables:
        values['pivot_table_name'] = tables['model_has_limits']

    if 'relationship' in raw_config:
        relationship = raw_config['relationship']
        if not isinstance(relationship, str):
            raise ValueError("'relationship' must be a string")
        values['relationship_name'] = relationship

    return LimiterConfig(**values)


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    """Extract an optional dictionary section and reject unknown keys.

    Args:
        raw_config: Parsed YAML document
        name: Section name
        allowed_keys: Keys accepted inside the section

    Returns:
        Section contents, empty when absent

    Raises:
        ValueError: If the section is malformed
    """
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _positive_number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{path}' must be a number > 0")
    return float(value)
