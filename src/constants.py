"""Shared constants for the guardrail core."""

DB_SCHEMA = "kanguard"

# Attribution defaults when a caller omits its identity.
DEFAULT_USER_ACTOR = "kan-user"
DEFAULT_SYSTEM_ACTOR = "kan-system"

# 24h, used when neither the request nor GUARD_DEFAULT_LEASE_TTL_SECONDS sets one.
DEFAULT_LEASE_TTL_SECONDS = 24 * 60 * 60

# Unresolved attention rows returned by capture_state.
CAPTURE_STATE_ATTENTION_LIMIT = 10
