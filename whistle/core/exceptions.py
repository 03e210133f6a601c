"""
Core-wide exception hierarchy.

Services raise these types; blueprints and the scheduler translate them.
Each type carries a fixed handling policy:

    EncryptionError            fatal to the write; nothing is persisted
    DecryptionError            recoverable; render a placeholder, audit-log
    NotificationDispatchError  per channel; logged, never fails the event
    EscalationSweepError       per candidate; logged, sweep continues
    StoreUnavailableError      aborts the current cycle; next tick retries

Usage:
    from whistle.core.exceptions import EncryptionError, NotFoundError

    raise NotFoundError(resource="Report", resource_id="K3F9Q2ZD")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Report").
        resource_id: The key that was looked up. Included in logs.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class EncryptionError(Exception):
    """Raised when a value cannot be encrypted.

    The write that triggered it must be rejected as a whole.  There is no
    fallback that stores the plaintext instead.

    ``public_message`` is what a submitter may be shown; the exception text
    itself stays in server logs.
    """

    public_message = "Submission failed, please retry."


class DecryptionError(Exception):
    """Raised when a ciphertext fails authentication or is malformed.

    Recoverable: callers render ``UNDECRYPTABLE_PLACEHOLDER`` instead of the
    field and keep going.
    """


class NotificationDispatchError(Exception):
    """A single channel failed to deliver an event.

    Args:
        channel: Channel name (dashboard, email, sms).
        dedupe_key: Key of the event being dispatched.
        reason: Short failure description.
    """

    def __init__(self, channel: str, dedupe_key: str, reason: str) -> None:
        self.channel = channel
        self.dedupe_key = dedupe_key
        self.reason = reason
        super().__init__(f"channel={channel} key={dedupe_key}: {reason}")


class EscalationSweepError(Exception):
    """Processing one escalation candidate failed."""

    def __init__(self, short_id: str, reason: str) -> None:
        self.short_id = short_id
        self.reason = reason
        super().__init__(f"escalation failed for {short_id}: {reason}")


class StoreUnavailableError(Exception):
    """The report store could not be reached or refused the operation."""
