"""Error taxonomy shared by gateway components.

Each family maps to one HTTP behavior in the gateway. Subclasses exist so the
specific failure can be logged and counted internally; callers outside the
trust boundary only ever see the family-level response.
"""


class BGPayError(Exception):
    """Base class for all per-request failures."""


class AuthenticationError(BGPayError):
    """Merchant credential could not be accepted."""

    kind = "authentication"


class MalformedCredential(AuthenticationError):
    kind = "malformed"


class UnknownCredential(AuthenticationError):
    kind = "unknown"


class InactiveCredential(AuthenticationError):
    kind = "inactive"


class SecretMismatch(AuthenticationError):
    kind = "secret_mismatch"


class IPNotAllowed(AuthenticationError):
    kind = "ip_not_allowed"


class RateLimitExceeded(BGPayError):
    """Too many requests for one merchant/client-IP key."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"rate limit exceeded, retry after {retry_after:.0f}s")
        self.retry_after = retry_after


class ValidationError(BGPayError):
    """Client-correctable request problem."""


class InvalidPaymentRequest(ValidationError):
    def __init__(self, errors: list[dict]) -> None:
        super().__init__("invalid payment request")
        self.errors = errors


class PaymentNotFound(ValidationError):
    pass


class UpstreamError(BGPayError):
    """External dependency failed or timed out."""


class ProcessorUnavailable(UpstreamError):
    pass


class SignatureError(BGPayError):
    """Inbound webhook could not be authenticated."""


class SignatureInvalid(SignatureError):
    pass


class StateError(BGPayError):
    """Status update could not be applied."""


class UnknownExternalStatus(StateError):
    def __init__(self, external_status) -> None:
        super().__init__(f"unknown external status: {external_status!r}")
        self.external_status = external_status


class InvalidTransition(StateError):
    def __init__(self, current: str, new: str) -> None:
        super().__init__(f"Invalid transition: {current} -> {new}")
        self.current = current
        self.new = new
