"""Engine runtime settings - tunable parameters for run execution.

All values read from environment variables with defaults matching the
platform's historical limits. Import from here instead of hardcoding.

Infrastructure config (database URL, API host, platform URL, tokens) stays
in graphflow/config.py.
"""

from __future__ import annotations

import os


def _int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


def _float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)))


# =====================================================================
# Run concurrency
# =====================================================================

# Node activations allowed to hold status "running" at once, per run
DEFAULT_MAX_CONCURRENCY = _int("WORKFLOW_DEFAULT_MAX_CONCURRENCY", 2)
MAX_CONCURRENCY_LIMIT = _int("WORKFLOW_MAX_CONCURRENCY_LIMIT", 10)


# =====================================================================
# Node config bounds
# =====================================================================

DEFAULT_DELAY_MS = _int("WORKFLOW_DEFAULT_DELAY_MS", 1000)
MAX_DELAY_MS = _int("WORKFLOW_MAX_DELAY_MS", 3_600_000)  # 1 hour

DEFAULT_WEBHOOK_TIMEOUT_MS = _int("WORKFLOW_DEFAULT_WEBHOOK_TIMEOUT_MS", 86_400_000)
MAX_WEBHOOK_TIMEOUT_MS = _int("WORKFLOW_MAX_WEBHOOK_TIMEOUT_MS", 86_400_000)  # 24 hours

DEFAULT_MAX_TURNS = _int("WORKFLOW_DEFAULT_MAX_TURNS", 50)
MAX_TURNS_LIMIT = _int("WORKFLOW_MAX_TURNS_LIMIT", 100)

MAX_PARALLEL_BRANCHES = _int("WORKFLOW_MAX_PARALLEL_BRANCHES", 10)


# =====================================================================
# External work (agent sessions / work tasks)
# =====================================================================

# Session wall-clock budget = max_turns * SESSION_SECONDS_PER_TURN
SESSION_SECONDS_PER_TURN = _float("WORKFLOW_SESSION_SECONDS_PER_TURN", 30.0)

# Work task wall-clock budget (seconds)
WORK_TASK_TIMEOUT_SECONDS = _float("WORKFLOW_WORK_TASK_TIMEOUT_SECONDS", 3600.0)

# Poll interval when waiting on the platform (seconds)
SESSION_POLL_INTERVAL = _float("WORKFLOW_SESSION_POLL_INTERVAL", 2.0)
WORK_TASK_POLL_INTERVAL = _float("WORKFLOW_WORK_TASK_POLL_INTERVAL", 5.0)

# Platform HTTP request timeout (seconds)
PLATFORM_HTTP_TIMEOUT = _float("WORKFLOW_PLATFORM_HTTP_TIMEOUT", 30.0)

# Consecutive transient poll failures (timeouts, connection errors, 5xx)
# tolerated while waiting on a session or work task
PLATFORM_POLL_MAX_ERRORS = _int("WORKFLOW_PLATFORM_POLL_MAX_ERRORS", 5)


# =====================================================================
# Streaming
# =====================================================================

# SSE keepalive comment interval (seconds)
SSE_KEEPALIVE_INTERVAL = _float("WORKFLOW_SSE_KEEPALIVE_INTERVAL", 30.0)
