"""Error taxonomy for donecall.

None of these are fatal. Each is raised at the leaf that notices the
problem and recovered by the component that owns it.
"""

from __future__ import annotations


class DonecallError(Exception):
    """Base class for all donecall errors."""


class SignalUnavailable(DonecallError):
    """A signal source read failed or the source is not ready yet."""


class StaleRestoredState(DonecallError):
    """A restored ephemeral or durable field failed validation."""

    def __init__(self, field: str, value: object):
        super().__init__(f"discarding restored {field}={value!r}")
        self.field = field
        self.value = value


class DeliveryFailure(DonecallError):
    """A notification, sound request or broadcast could not be delivered."""


class DuplicateCompletion(DonecallError):
    """A completion for a session arrived inside the dedupe window."""

    def __init__(self, session_id: str, emitted_at: float):
        super().__init__(f"duplicate completion for {session_id} at {emitted_at}")
        self.session_id = session_id
        self.emitted_at = emitted_at
