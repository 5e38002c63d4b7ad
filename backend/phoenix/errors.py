"""Error taxonomy shared by the gates, the orchestrator and the HTTP layer."""


class PhoenixError(Exception):
    """Base class; `status_code` and `code` drive the HTTP mapping."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = ""):
        self.message = message or self.code
        super().__init__(self.message)


class AuthenticationFailure(PhoenixError):
    status_code = 401
    code = "authentication_failed"


class QuotaDenied(PhoenixError):
    """Raised when a shop is not entitled to a category or has used its monthly allowance."""

    status_code = 403
    code = "upgrade_required"

    def __init__(self, message: str, *, category: str, reason: str, used: int = 0, limit: int = 0, tier: str = ""):
        self.category = category
        self.reason = reason
        self.used = used
        self.limit = limit
        self.tier = tier
        super().__init__(message)


class LockedAccount(PhoenixError):
    status_code = 403
    code = "TRIAL_EXPIRED_LOCKDOWN"


class InfrastructureError(PhoenixError):
    """Store or session provider unreachable. Safe for the caller to retry."""

    status_code = 503
    code = "infrastructure_unavailable"


class GenerationError(PhoenixError):
    status_code = 502
    code = "generation_failed"


class CommitError(PhoenixError):
    status_code = 502
    code = "commit_failed"


class RateLimitError(PhoenixError):
    """External API throttled us (HTTP 429, THROTTLED, ResourceExhausted)."""

    status_code = 429
    code = "rate_limited"
