"""Protocol constants — limits and defaults shared by models and config."""

from __future__ import annotations

# Steps
DEFAULT_STEP_TIMEOUT_SECONDS: float = 300.0
MAX_STEP_TIMEOUT_SECONDS: float = 86_400.0
MAX_RETRY_COUNT: int = 20
MAX_RETRY_DELAY_SECONDS: float = 300.0
DEFAULT_RETRY_BACKOFF_FACTOR: float = 1.0

# Identifiers
NAME_MAX_LEN: int = 128
TARGET_MAX_LEN: int = 256

# Scheduling
DEFAULT_MAX_CONCURRENCY: int = 4
MAX_CONCURRENCY: int = 64

# Module descriptors
DEFAULT_MODULE_VERSION: str = "0.0.0"

# Templates
TEMPLATE_OPEN: str = "{{"
TEMPLATE_CLOSE: str = "}}"
TEMPLATE_PREFIX_VAR: str = "var"
TEMPLATE_PREFIX_ENV: str = "env"

# Playbook discovery
PLAYBOOK_SUFFIXES: tuple[str, ...] = (".json", ".yaml", ".yml")
