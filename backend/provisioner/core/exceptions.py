"""Exception taxonomy for webhook ingestion and CRM provisioning"""


class WebhookError(Exception):
    """Base class for errors raised while ingesting a webhook event"""


class MalformedSignature(WebhookError):
    """Signature header is missing its timestamp or v1 component"""


class TimestampOutOfRange(WebhookError):
    """Signature timestamp is outside the accepted tolerance window"""

    def __init__(self, difference: int, tolerance: int):
        self.difference = difference
        self.tolerance = tolerance
        super().__init__(
            f"Timestamp outside tolerance range. Difference: {difference}s (tolerance {tolerance}s)"
        )


class MissingSignature(WebhookError):
    """No signature header was sent while a webhook secret is configured"""


class InvalidSignature(WebhookError):
    """Signature header is well formed but does not match the body"""


class InvalidPayload(WebhookError):
    """Webhook body is not a valid event envelope"""


class DuplicateIdentity(WebhookError):
    """A ledger entry with the same event identity already exists"""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Webhook event {event_id} already recorded")


class InvalidTransition(WebhookError):
    """Order status change not permitted by the order state machine"""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move order from {current} to {target}")


class RecordNotFound(Exception):
    """Customer, order or ledger lookup miss"""


class ProvisioningError(Exception):
    """CRM returned a success response without a usable id"""

    def __init__(self, message: str, stage: str):
        self.stage = stage
        super().__init__(message)


class RemoteRejected(Exception):
    """CRM or email API rejected a request (HTTP error, timeout, connection error)"""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)
