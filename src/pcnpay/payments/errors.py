"""Error taxonomy for payment plan provisioning.

Every error raised by the registry, the processor gateway or the provisioner
is a ``PaymentPlanError``. The HTTP layer maps each subclass to a status code
through ``http_status`` and tells the caller whether resubmitting may help
through ``retryable``.
"""

from typing import Optional


class PaymentPlanError(Exception):
    """Base class for provisioning and query failures."""

    http_status = 400
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        # Set by the provisioner to the state the request failed in
        self.failed_state: Optional[str] = None


class ValidationError(PaymentPlanError):
    """Malformed or missing input; the caller must correct and resubmit."""


class ConflictError(PaymentPlanError):
    """A concurrent create for the same email already succeeded.

    Recovered by re-fetching; never surfaced to callers.
    """

    http_status = 409


class InvariantViolation(PaymentPlanError):
    """Attempt to replace a stored processor customer ID with a different one."""

    http_status = 500


class NotFoundError(PaymentPlanError):
    """The referenced processor object does not exist."""

    http_status = 404


class TransientError(PaymentPlanError):
    """Network failure, timeout or rate limit from the processor."""

    http_status = 503
    retryable = True


class ProcessorError(PaymentPlanError):
    """Any other processor-reported error, carrying the processor's message."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code
