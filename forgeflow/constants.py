"""Shared constants for forgeflow."""

STEPS_TOPIC = "forgeflow.steps"
COMPLETIONS_TOPIC = "forgeflow.completions"
EVENTS_TOPIC = "forgeflow.events"

# Variable key holding failures of continue-on-failure nodes.
ERRORS_KEY = "__errors__"

CONDITION_TRUE = "true"
CONDITION_FALSE = "false"
APPROVED = "approved"
REJECTED = "rejected"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_BACKOFF = 300.0
DEFAULT_STEP_TIMEOUT = 300.0
DEFAULT_PLAN_CACHE_SIZE = 256

# Redis delivery leases. A lease must outlive the step timeout or a slow
# step is handed to a second consumer.
DEFAULT_LOCK_DURATION = 360.0
DEFAULT_STALLED_INTERVAL = 30.0
DEFAULT_MAX_STALLED_COUNT = 1
