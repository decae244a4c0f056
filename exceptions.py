"""
Reminder Engine Exceptions
Error taxonomy shared by the scheduling tools, the adherence store and the API
"""

from typing import Optional


class ReminderEngineError(Exception):
    """Base class for all reminder scheduling errors"""


class InvalidDescriptor(ReminderEngineError, ValueError):
    """A schedule descriptor failed validation at construction time"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidTransition(ReminderEngineError):
    """An occurrence cannot move to the requested state (unknown or already resolved)"""

    def __init__(self, key, current_state=None, requested_state=None):
        self.key = key
        self.current_state = current_state
        self.requested_state = requested_state
        if current_state is None:
            message = f"Occurrence {key} not found"
        else:
            message = (
                f"Occurrence {key} is {getattr(current_state, 'value', current_state)}, "
                f"cannot mark as {getattr(requested_state, 'value', requested_state)}"
            )
        super().__init__(message)


class MedicationNotFound(ReminderEngineError, LookupError):
    """Referenced medication does not exist"""

    def __init__(self, medication_id: int):
        super().__init__(f"Medication {medication_id} not found")
        self.medication_id = medication_id


class SchedulingUnavailable(ReminderEngineError):
    """The notification scheduler refused to schedule (permission, quota, transport)"""


class CancellationFailed(ReminderEngineError):
    """The notification scheduler failed to cancel a handle"""

    def __init__(self, handle: str, reason: str = ""):
        super().__init__(f"Failed to cancel notification {handle}: {reason}".rstrip(": "))
        self.handle = handle
