"""
Error taxonomy for the event integration layer.

Producers see PublishError. Consumers turn DecodeError into a reject and
HandlerError (or any other handler exception) into a bounded requeue.
PreferenceConflict never reaches a caller: the preference store resolves it
by fetching the record that won the race.
"""


class EventingError(Exception):
    """Base class for all errors raised by this package."""


class BrokerError(EventingError):
    """The broker client failed (connection lost, channel closed, precondition failed)."""


class PublishError(EventingError):
    """
    An event could not be handed to the broker.

    Raised to the producing caller, who decides whether to retry, queue
    locally or escalate. Nothing is buffered on the producer side.
    """

    def __init__(self, message: str, event_type: str = ""):
        super().__init__(message)
        self.event_type = event_type


class DecodeError(EventingError):
    """A delivered message is not a valid envelope. Terminal for that message."""


class UnknownEventType(DecodeError):
    """The envelope carries a type tag outside the taxonomy."""

    def __init__(self, event_type: str):
        super().__init__(f"Unknown event type: {event_type!r}")
        self.event_type = event_type


class HandlerError(EventingError):
    """A handler failed on a downstream dependency. Retryable."""


class PreferenceConflict(EventingError):
    """A preference record already exists for this user (unique constraint)."""

    def __init__(self, user_id: str):
        super().__init__(f"Preference already exists for user {user_id}")
        self.user_id = user_id
