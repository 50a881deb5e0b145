"""Exceptions raised by the core services.

Each error knows how to render itself as the JSON payload sent to clients.
"""

from shared.models.quota import Plan, QuotaScope

# Error code understood by the app to open the paywall.
QUOTA_EXCEEDED_CODE = "PAYWALL_REQUIRED"


class QuotaExceededError(Exception):
    """Raised when a user has no allowance left for the requested action."""

    def __init__(self, scope: QuotaScope, used: int, limit: int | None, plan: Plan) -> None:
        self.scope = scope
        self.used = used
        self.limit = limit
        self.plan = plan
        super().__init__(self.describe())

    def describe(self) -> str:
        if self.scope == QuotaScope.MESSAGES:
            return f"Daily message limit reached ({self.used}/{self.limit})."
        return f"Upload limit reached ({self.used}/{self.limit})."

    def to_payload(self) -> dict:
        return {
            "error": self.describe(),
            "code": QUOTA_EXCEEDED_CODE,
            "scope": self.scope.value,
            "used": self.used,
            "limit": self.limit,
            "plan": self.plan.value,
        }


class LLMRequestError(Exception):
    """Raised when the external AI service rejects or fails a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RepositoryError(Exception):
    """Raised when the document repository cannot serve a request."""