"""
Exception hierarchy for the reminders service
"""


class ReminderError(Exception):
    """Base class for reminder service errors"""


class InvalidRuleError(ReminderError, ValueError):
    """A recurrence rule or routine schedule failed validation"""


class InvalidTransitionError(ReminderError):
    """A generation status transition that the state machine does not allow"""


class StoreError(ReminderError):
    """The document store rejected an operation"""


class UnknownCollectionError(StoreError, KeyError):
    pass


class BatchTooLargeError(StoreError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"batch of {size} operations exceeds limit of {limit}")
        self.size = size
        self.limit = limit


class DeliveryError(ReminderError):
    """A delivery channel failed to send a message"""


class PermanentDeliveryError(DeliveryError):
    """The destination is gone (e.g. a stale push endpoint) and should be dropped"""
