from __future__ import annotations

# Server options
CONF_DB_PATH = "db_path"
CONF_HOST = "host"
CONF_PORT = "port"
CONF_MAX_CODE_ATTEMPTS = "max_code_attempts"
CONF_CODE_LENGTH = "code_length"
CONF_LOG_LEVEL = "log_level"

# Client options
CONF_BASE_URL = "base_url"
CONF_CALLER_ID = "caller_id"
CONF_DISPLAY_NAME = "display_name"
CONF_CACHE_PATH = "cache_path"
CONF_TIMEOUT = "timeout"
CONF_SYNC_INTERVAL = "interval"

DEFAULT_DB_PATH = "petsync.db"
DEFAULT_CACHE_PATH = ".petsync-cache.db"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_TIMEOUT = 30
DEFAULT_SYNC_INTERVAL = 300

# Share codes avoid glyphs that are easy to confuse when typed by hand (0/O, 1/I).
SHARE_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEFAULT_CODE_LENGTH = 6
DEFAULT_MAX_CODE_ATTEMPTS = 32

# Environment overrides applied on top of the YAML options file.
ENV_CONFIG_PATH = "PETSYNC_CONFIG"
ENV_DB_PATH = "PETSYNC_DB_PATH"
ENV_BASE_URL = "PETSYNC_BASE_URL"
ENV_CALLER_ID = "PETSYNC_CALLER_ID"

HEADER_CALLER_ID = "X-Caller-ID"
HEADER_DISPLAY_NAME = "X-Display-Name"

SCHEDULE_TYPE_INSULIN = "Insulin"
