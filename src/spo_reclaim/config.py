"""
Reclamation settings
YAML file + environment variables (.env) + CLI overrides
"""

import os
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

MODES = ("versions", "shrink")
DISCOVERY_STRATEGIES = ("search", "enumeration")
LEDGER_KEYS = ("path", "name")

# YAML section -> dataclass fields read from it
_SECTIONS = {
    'sharepoint': ('site_url', 'library', 'tenant_id', 'client_id', 'client_secret'),
    'discovery': (
        'strategy', 'extension', 'name_filter', 'min_size_bytes', 'max_size_bytes',
        'modified_after', 'modified_before', 'page_size', 'max_items', 'page_pause_seconds'
    ),
    'processing': (
        'mode', 'dry_run', 'resume', 'test_mode', 'test_mode_limit', 'max_retries',
        'base_delay_seconds', 'throttle_cooldown_seconds', 'item_pause_seconds', 'ledger_key'
    ),
    'versions': ('cutoff_date', 'keep_min_versions'),
    'shrink': ('target_width', 'chunked_upload_threshold', 'upload_chunk_size'),
    'output': ('scratch_dir', 'ledger_path', 'report_dir', 'top_n'),
    'logging': ('log_file', 'log_level'),
}

# Short YAML keys accepted in the logging section
_ALIASES = {
    'logging': {'file': 'log_file', 'level': 'log_level'},
}

_DATE_FIELDS = ('cutoff_date', 'modified_after', 'modified_before')
_PATH_FIELDS = ('scratch_dir', 'ledger_path', 'report_dir', 'log_file')


@dataclass
class ReclaimConfig:
    """Run configuration"""
    site_url: str = ""
    library: str = "Documents"
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""

    mode: str = "versions"
    strategy: str = "search"
    extension: str = ".pptx"
    name_filter: str = ""
    min_size_bytes: int = 10 * 1024 * 1024
    max_size_bytes: Optional[int] = None
    modified_after: Optional[datetime] = None
    modified_before: Optional[datetime] = None
    page_size: int = 500
    max_items: int = 5000
    page_pause_seconds: float = 2.0

    dry_run: bool = False
    resume: bool = True
    test_mode: bool = False
    test_mode_limit: int = 5
    max_retries: int = 1
    base_delay_seconds: float = 5.0
    throttle_cooldown_seconds: float = 30.0
    item_pause_seconds: float = 1.0
    ledger_key: str = "path"

    cutoff_date: datetime = field(default_factory=lambda: datetime(2024, 1, 1, tzinfo=timezone.utc))
    keep_min_versions: int = 1

    target_width: int = 800
    chunked_upload_threshold: int = 4 * 1024 * 1024
    upload_chunk_size: int = 320 * 1024 * 16

    scratch_dir: Path = Path("data/scratch")
    ledger_path: Path = Path("data/reclaim_ledger.db")
    report_dir: Path = Path("data/reports")
    top_n: int = 10

    log_file: Path = Path("data/logs/reclaim.log")
    log_level: str = "INFO"

    def validate(self) -> "ReclaimConfig":
        """Normalize and check values; raises ConfigError."""
        if self.mode not in MODES:
            raise ConfigError(f"mode must be one of {MODES}: {self.mode!r}")
        if self.strategy not in DISCOVERY_STRATEGIES:
            raise ConfigError(f"discovery strategy must be one of {DISCOVERY_STRATEGIES}: {self.strategy!r}")
        if self.ledger_key not in LEDGER_KEYS:
            raise ConfigError(f"ledger_key must be one of {LEDGER_KEYS}: {self.ledger_key!r}")
        if not self.extension.startswith('.'):
            self.extension = f".{self.extension}"
        self.extension = self.extension.lower()
        if self.keep_min_versions < 0:
            raise ConfigError("keep_min_versions must be >= 0")
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.page_size <= 0 or self.max_items <= 0:
            raise ConfigError("page_size and max_items must be positive")
        if self.max_size_bytes is not None and self.max_size_bytes < self.min_size_bytes:
            raise ConfigError("max_size_bytes must be >= min_size_bytes")
        if self.target_width <= 0:
            raise ConfigError("target_width must be positive")
        return self

    def apply_overrides(self, overrides: Dict[str, Any]) -> "ReclaimConfig":
        """Apply non-None values (e.g. parsed CLI flags) on top of this config."""
        known = {f.name for f in fields(self)}
        for key, value in overrides.items():
            if value is None or key not in known:
                continue
            setattr(self, key, _coerce(key, value))
        return self.validate()


def parse_date(value: Any) -> datetime:
    """Parse 'YYYY-MM-DD' / ISO-8601 strings (or date objects) into aware UTC datetimes"""
    if isinstance(value, datetime):
        parsed = value
    elif hasattr(value, 'year') and hasattr(value, 'month'):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError as e:
            raise ConfigError(f"invalid date: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _coerce(key: str, value: Any) -> Any:
    if key in _DATE_FIELDS:
        return parse_date(value)
    if key in _PATH_FIELDS:
        return Path(value)
    return value


def load_config(config_path: Optional[Path] = None, env_file: Optional[Path] = None) -> ReclaimConfig:
    """
    Build the configuration from a YAML file and environment variables

    Args:
        config_path: YAML file (optional; defaults are used when omitted)
        env_file: .env file with credentials (default: search from cwd)

    Returns:
        Validated ReclaimConfig
    """
    load_dotenv(env_file)

    raw: Dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        with open(path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f) or {}

    values: Dict[str, Any] = {}
    for section, keys in _SECTIONS.items():
        section_values = dict(raw.get(section) or {})
        for alias, key in _ALIASES.get(section, {}).items():
            if alias in section_values:
                section_values.setdefault(key, section_values[alias])
        for key in keys:
            if key in section_values and section_values[key] is not None:
                values[key] = _coerce(key, section_values[key])

    # Credentials from environment win over the file
    env_map = {
        'tenant_id': 'SHAREPOINT_TENANT_ID',
        'client_id': 'SHAREPOINT_CLIENT_ID',
        'client_secret': 'SHAREPOINT_CLIENT_SECRET',
        'site_url': 'SHAREPOINT_SITE_URL',
    }
    for key, env_name in env_map.items():
        env_value = os.environ.get(env_name)
        if env_value:
            values[key] = env_value

    return ReclaimConfig(**values).validate()
