"""
Application configuration manager.
Stores settings in a JSON file under the app support dir.
API keys are read from the environment and never written here.
"""

import json
import logging
from pathlib import Path

from clipnotes.core.constants import (
    CONFIG_PATH, DB_PATH, DEFAULT_MEDIA_ROOT, JOBS_CACHE_DIR,
    DEFAULT_WORKER_COUNT, DEFAULT_LEASE_SEC, DEFAULT_POLL_INTERVAL_SEC,
    CHAT_MODEL, NAMING_MODEL, TRANSCRIPTION_MODEL,
    TOKEN_BUDGET_PER_MINUTE, SINGLE_CALL_TOKEN_LIMIT, PART_TOKEN_LIMIT,
    MIN_PART_TOKEN_LIMIT, MAX_OUTPUT_TOKENS,
    SHARE_BASE_URL, CAPTIONS_API_BASE,
)

# Validation bounds
_WORKERS_MIN = 1
_WORKERS_MAX = 32
_LEASE_MIN = 30
_LEASE_MAX = 3600
_POLL_MIN = 0.1
_POLL_MAX = 60.0
_BUDGET_MIN = 1000
_MEDIA_BACKENDS = ('local', 's3')

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'db_path': str(DB_PATH),
    'media_root': str(DEFAULT_MEDIA_ROOT),
    'workspace_root': str(JOBS_CACHE_DIR),
    'worker_count': DEFAULT_WORKER_COUNT,
    'lease_seconds': DEFAULT_LEASE_SEC,
    'poll_interval_sec': DEFAULT_POLL_INTERVAL_SEC,
    'chat_model': CHAT_MODEL,
    'naming_model': NAMING_MODEL,
    'transcription_model': TRANSCRIPTION_MODEL,
    'token_budget_per_minute': TOKEN_BUDGET_PER_MINUTE,
    'single_call_token_limit': SINGLE_CALL_TOKEN_LIMIT,
    'part_token_limit': PART_TOKEN_LIMIT,
    'max_output_tokens': MAX_OUTPUT_TOKENS,
    'share_base_url': SHARE_BASE_URL,
    'captions_api_base': CAPTIONS_API_BASE,
    'keep_debug_artifacts': False,
    'media_backend': 'local',
    's3_bucket': None,
    's3_endpoint': None,
    's3_region': None,
    's3_prefix': '',
}

_INT_BOUNDS = {
    'worker_count': (_WORKERS_MIN, _WORKERS_MAX),
    'lease_seconds': (_LEASE_MIN, _LEASE_MAX),
    'token_budget_per_minute': (_BUDGET_MIN, 10_000_000),
    'single_call_token_limit': (MIN_PART_TOKEN_LIMIT, 10_000_000),
    'part_token_limit': (MIN_PART_TOKEN_LIMIT, 10_000_000),
    'max_output_tokens': (64, 128_000),
}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None, overrides: dict | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()
        for key, value in (overrides or {}).items():
            self._data[key] = self._validate(key, value)

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _INT_BOUNDS:
            lo, hi = _INT_BOUNDS[key]
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            return max(lo, min(hi, value))

        if key == 'poll_interval_sec':
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid poll_interval_sec %r, using default", value)
                return DEFAULT_POLL_INTERVAL_SEC
            return max(_POLL_MIN, min(_POLL_MAX, value))

        if key == 'share_base_url':
            return str(value).rstrip('/')

        if key == 'keep_debug_artifacts':
            return bool(value)

        if key == 'media_backend':
            if value not in _MEDIA_BACKENDS:
                logger.warning("Unknown media_backend %r, using local", value)
                return 'local'
            return value

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    # ── Typed accessors ───────────────────────────────────────────────

    @property
    def db_path(self) -> Path:
        return Path(self._data['db_path'])

    @property
    def media_root(self) -> Path:
        return Path(self._data['media_root'])

    @property
    def workspace_root(self) -> Path:
        return Path(self._data['workspace_root'])

    @property
    def worker_count(self) -> int:
        return self._data['worker_count']

    @property
    def lease_seconds(self) -> int:
        return self._data['lease_seconds']

    @property
    def poll_interval_sec(self) -> float:
        return self._data['poll_interval_sec']

    @property
    def keep_debug_artifacts(self) -> bool:
        return self._data.get('keep_debug_artifacts', False)
