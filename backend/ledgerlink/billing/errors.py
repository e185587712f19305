"""
Webhook reconciliation errors.

Permanent rejections (bad signature, malformed payload) map to 400 so the
sender stops retrying. Retryable failures map to 500 so it tries again.
UnresolvableEntityError is acknowledged: retrying cannot help.
"""

from fastapi import status

from ledgerlink.platform.errors import AppError


class SignatureInvalidError(AppError):
    """Webhook signature missing, wrong, or outside the timestamp tolerance."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(
            code="WEBHOOK_SIGNATURE_INVALID",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class MalformedEventError(AppError):
    """Payload is not a well-formed event."""

    def __init__(self, message: str = "Malformed webhook payload"):
        super().__init__(
            code="MALFORMED_EVENT",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class PaymentsProcessorUnavailableError(AppError):
    """The payments processor API could not be reached; retry later."""

    retryable = True

    def __init__(self, message: str = "Payments processor unavailable"):
        super().__init__(
            code="PAYMENTS_PROCESSOR_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class WebhookProcessingTimeoutError(AppError):
    """Processing exceeded its time bound; nothing was committed."""

    retryable = True

    def __init__(self, timeout_seconds: float):
        super().__init__(
            code="WEBHOOK_PROCESSING_TIMEOUT",
            message=f"Webhook processing exceeded {timeout_seconds}s",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class UnresolvableEntityError(Exception):
    """
    The event references something we cannot map to local records.

    Logged and acknowledged at the reconciler boundary, never retried.
    """

    def __init__(self, message: str, entity: str = "unknown", external_id: str = None):
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.external_id = external_id
