"""Funnel engine constants shared by the core services.

Timing and retry knobs can be overridden via environment variables so that
deployments can tune them without code changes.
"""

import os

# --- Conditional rules ---
RULE_OPERATORS: frozenset[str] = frozenset({"eq", "neq", "gt", "gte", "lt", "lte", "in"})
NUMERIC_OPERATORS: frozenset[str] = frozenset({"gt", "gte", "lt", "lte"})
RULE_TYPE_REQUIRED = "conditional_required"
RULE_TYPE_VISIBLE = "conditional_visible"

# --- Idempotency ---
# How long a stored response stays replayable
IDEMPOTENCY_TTL_HOURS = int(os.getenv("IDEMPOTENCY_TTL_HOURS", "24"))
# How long a request waits for a concurrent request holding the same key
IDEMPOTENCY_POLL_ATTEMPTS = int(os.getenv("IDEMPOTENCY_POLL_ATTEMPTS", "10"))
IDEMPOTENCY_POLL_INTERVAL_MS = int(os.getenv("IDEMPOTENCY_POLL_INTERVAL_MS", "100"))
IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAYED_HEADER = "Idempotent-Replayed"

# --- Insert-or-fetch ---
INSERT_RETRY_ATTEMPTS = int(os.getenv("INSERT_RETRY_ATTEMPTS", "3"))
INSERT_RETRY_DELAY_MS = int(os.getenv("INSERT_RETRY_DELAY_MS", "50"))

# --- Processing jobs ---
JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
JOB_SCHEMA_VERSION = "v1"
DEFAULT_SWEEP_LIMIT = int(os.getenv("DEFAULT_SWEEP_LIMIT", "100"))
