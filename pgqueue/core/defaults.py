"""Shared default constants for the pgqueue library."""

DEFAULT_SCHEMA: str = 'public'

DEFAULT_RETRY_LIMIT: int = 10

DEFAULT_SIGNING_HEADER: str = 'X-HMAC-Signature'

# Status code that marks a response as "completed and spawn a follow-up job".
# Some deployments use 201 instead; see DispatchConfig.redirect_status.
DEFAULT_REDIRECT_STATUS: int = 210

# Delay applied to a 429 response without a usable Retry-After header.
DEFAULT_RATE_LIMIT_DELAY_S: int = 600  # 10 minutes

# Synthetic status recorded for FUNC jobs (no HTTP round trip happened).
FUNC_SUCCESS_STATUS: int = 200

# Status recorded when a poll lease expired without acknowledgement.
POLL_TIMEOUT_STATUS: int = 408
POLL_TIMEOUT_MESSAGE: str = 'Poll job not acknowledged in time'

# Status recorded when dispatch raised instead of producing a response.
INTERNAL_ERROR_STATUS: int = 0

# Response header that turns a 4xx into a completion.
JOB_FINISHED_HEADER: str = 'x-job-finished'

POLL_LEASE_S: int = 60
POLL_REPLAY_WINDOW_S: int = 2

# Pause between resolution sweeps while waiting for in-flight requests at exit.
DRAIN_POLL_INTERVAL_S: float = 0.2
