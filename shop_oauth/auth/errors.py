"""Error taxonomy for the OAuth install flow.

Every failure the flow can produce is one of the classes below. The API
layer maps them to HTTP responses through ``status_code`` and ``code``;
``user_message`` is the only text a merchant ever sees.
"""


class OAuthFlowError(Exception):
    """Base class for OAuth flow failures."""

    status_code = 500
    code = "INTERNAL_ERROR"
    user_message = "Something went wrong during installation."

    def __init__(self, message: str, step: str | None = None):
        super().__init__(message)
        self.step = step
        self.correlation_id: str | None = None


class ConfigurationError(OAuthFlowError):
    """Client credentials or other required settings are missing.

    An operator defect, never retryable.
    """

    status_code = 500
    code = "CONFIGURATION_ERROR"
    user_message = "The app is not configured for installation."


class ValidationError(OAuthFlowError):
    """Malformed shop domain or missing callback parameters."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, step: str | None = None):
        super().__init__(message, step=step)
        self.user_message = message


class CsrfError(OAuthFlowError):
    """HMAC mismatch, stale callback, or missing/mismatched nonce.

    The user-facing message is identical for every cause. ``reason`` holds
    the internal detail and is only written to server logs.
    """

    status_code = 401
    code = "CSRF_FAILED"
    user_message = "Authorization could not be verified. Please restart the installation."

    def __init__(self, reason: str, step: str | None = None):
        super().__init__(self.user_message, step=step)
        self.reason = reason


class ProviderError(OAuthFlowError):
    """The provider rejected the authorization code exchange."""

    status_code = 502

    def __init__(
        self,
        message: str,
        provider_code: str,
        description: str,
        code_expired: bool = False,
        http_status: int | None = None,
        step: str | None = None,
    ):
        super().__init__(message, step=step)
        self.provider_code = provider_code
        self.description = description
        self.code_expired = code_expired
        self.http_status = http_status

    @property
    def code(self) -> str:
        return "AUTH_CODE_EXPIRED" if self.code_expired else "PROVIDER_ERROR"

    @property
    def user_message(self) -> str:
        if self.code_expired:
            return (
                "This installation link has expired or was already used. "
                "Please restart the installation."
            )
        return f"The store rejected the authorization request: {self.description}"


class TransientError(OAuthFlowError):
    """The provider could not be reached (timeout, DNS, connection reset).

    Surfaced immediately. The authorization code is single-use, so the
    exchange is never retried internally.
    """

    status_code = 503
    code = "PROVIDER_UNAVAILABLE"
    user_message = "The store could not be reached. Please restart the installation."
