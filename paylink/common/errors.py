"""Error taxonomy shared by the vault, adapters, store and HTTP layer.

Each error carries a stable `code`, the HTTP status the API maps it to, and
whether the caller may retry the same request later.
"""


class PaylinkError(Exception):
    """Base class for all domain errors."""

    code = "internal_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str = "", **details) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details


class ValidationFailed(PaylinkError):
    code = "validation_failed"
    http_status = 400


class MalformedWebhook(ValidationFailed):
    code = "malformed_webhook"


class NoActiveConfig(PaylinkError):
    code = "no_active_config"
    http_status = 409


class ProviderRejected(PaylinkError):
    """The provider refused the request and will refuse it again as-is."""

    code = "provider_rejected"
    http_status = 422


class ProviderUnavailable(PaylinkError):
    """Transient provider failure (timeout, transport error, 429, 5xx)."""

    code = "provider_unavailable"
    http_status = 503
    retryable = True


class InvalidTransition(PaylinkError):
    """A payment link status move that the state machine does not allow.

    `race_lost` is set when the move was valid against the status the caller
    read, but another writer changed the stored status first.
    """

    code = "invalid_transition"
    http_status = 409

    def __init__(self, message: str = "", race_lost: bool = False, **details) -> None:
        super().__init__(message, **details)
        self.race_lost = race_lost


class HasSettledTransactions(PaylinkError):
    code = "has_settled_transactions"
    http_status = 409


class NotFound(PaylinkError):
    code = "not_found"
    http_status = 404


class NotOwner(PaylinkError):
    code = "not_owner"
    http_status = 403


class RateLimited(PaylinkError):
    code = "rate_limited"
    http_status = 429
    retryable = True


class ConfigurationError(PaylinkError):
    """Vault key material is missing or malformed."""

    code = "configuration_error"
    http_status = 500


class IntegrityError(PaylinkError):
    """Ciphertext failed authentication (tampered or encrypted under a foreign key)."""

    code = "integrity_error"
    http_status = 500
