"""Exception types raised inside the conversation engine.

Only booking and escalation failures ever reach the caller, and both are
rendered as calm apology text by the turn processor. Everything here is
for logs, alerts and control flow.
"""


class ReceptionistError(Exception):
    """Base class for engine errors."""


class BookingError(ReceptionistError):
    """The scheduling capability did not produce a usable appointment."""


class SchedulingCapabilityError(ReceptionistError):
    """The scheduling capability could not be reached or refused a request."""


class ContextStoreError(ReceptionistError):
    """Loading or saving a conversation context failed."""
