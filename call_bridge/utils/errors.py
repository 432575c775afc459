"""Custom exception hierarchy for the call bridge.

All exceptions inherit from BridgeError, enabling targeted handling at the
webhook boundary while preserving specific failure context. The ``transient``
flag tells the retry orchestrator whether another attempt can help.
"""


class BridgeError(Exception):
    """Base exception for all call bridge errors."""

    transient = True

    def __init__(self, message: str, call_id: str | None = None) -> None:
        self.call_id = call_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.call_id:
            return f"[call={self.call_id}] {super().__str__()}"
        return super().__str__()


class ConfigurationError(BridgeError):
    """Raised when a required secret or URL is missing or malformed."""

    transient = False

    def __init__(
        self, message: str, call_id: str | None = None, setting: str | None = None
    ) -> None:
        self.setting = setting
        super().__init__(message, call_id)


class CredentialError(BridgeError):
    """Raised when the PBX access token cannot be obtained."""

    def __init__(
        self,
        message: str,
        call_id: str | None = None,
        errcode: int | None = None,
    ) -> None:
        self.errcode = errcode
        super().__init__(message, call_id)


class TokenExpiredError(CredentialError):
    """Raised when the PBX rejects the current token as expired or invalid.

    Handled by a single refresh-and-replay in the recording retriever, never
    by the generic retry loop.
    """

    transient = False


class RecordingFetchError(BridgeError):
    """Raised when a call recording cannot be resolved or downloaded."""

    def __init__(
        self,
        message: str,
        call_id: str | None = None,
        status_code: int | None = None,
        transient: bool = True,
    ) -> None:
        self.status_code = status_code
        self.transient = transient
        super().__init__(message, call_id)


class AudioValidationError(BridgeError):
    """Raised when downloaded audio is undersized, oversized or malformed."""

    transient = False

    def __init__(
        self,
        message: str,
        call_id: str | None = None,
        size_bytes: int | None = None,
    ) -> None:
        self.size_bytes = size_bytes
        super().__init__(message, call_id)


class TranscriptionError(BridgeError):
    """Raised when the speech-to-text service fails."""

    def __init__(
        self,
        message: str,
        call_id: str | None = None,
        provider: str | None = None,
        status_code: int | None = None,
        transient: bool = True,
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.transient = transient
        super().__init__(message, call_id)


class TranscriptionTimeoutError(TranscriptionError):
    """Raised when the speech-to-text request exceeds its timeout."""


class DeliveryError(BridgeError):
    """Raised when the downstream webhook rejects or fails a result."""

    def __init__(
        self,
        message: str,
        call_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, call_id)


class DeliveryTimeoutError(DeliveryError):
    """Raised when the downstream webhook does not answer in time."""


class RetryExhaustedError(BridgeError):
    """Raised when every attempt of a retried operation has failed."""

    transient = False

    def __init__(
        self,
        message: str,
        call_id: str | None = None,
        operation: str | None = None,
        attempts: int = 0,
    ) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(message, call_id)
