"""Exceptions raised by the access control engine.

State-machine violations (SessionNotFound, DuplicateSession,
InvalidSessionState) are caller errors. DriverError and its subclasses come
from the enforcement layer; EnforcementFailed is raised by the session
manager when a transition's firewall effect could not be confirmed.
"""


class AccessControlError(Exception):
    """Base class for all engine errors."""


class SessionNotFound(AccessControlError):
    def __init__(self, mac_address):
        self.mac_address = mac_address
        super().__init__(f"Session not found for {mac_address}")


class DuplicateSession(AccessControlError):
    def __init__(self, mac_address):
        self.mac_address = mac_address
        super().__init__(f"An active session already exists for {mac_address}")


class InvalidSessionState(AccessControlError):
    def __init__(self, mac_address, reason):
        self.mac_address = mac_address
        self.reason = reason
        super().__init__(f"Session for {mac_address} is {reason}")


class PersistenceError(AccessControlError):
    """The storage write or read failed; in-memory state was not touched."""


class DriverError(AccessControlError):
    """The enforcement tool could not carry out an operation."""


class DriverUnavailable(DriverError):
    """The enforcement tool is not installed or not executable."""


class DriverTimeout(DriverError):
    """The enforcement tool did not answer within the configured timeout."""


class VerificationFailed(DriverError):
    """The rule state read back after a change does not match the intent."""

    def __init__(self, mac_address, expected, status):
        self.mac_address = mac_address
        self.expected = expected
        self.status = status
        super().__init__(
            f"Firewall verification failed for {mac_address}: expected {expected}, "
            f"found allow_rules={status.allow_rule_count} "
            f"block_rules={status.block_rule_count}"
        )


class EnforcementFailed(AccessControlError):
    """A session transition was decided but its firewall effect is unconfirmed.

    ``session`` carries the committed session when the engine kept the
    transition (degraded state pending reconciliation), or None when the
    transition was rolled back.
    """

    def __init__(self, mac_address, message, session=None):
        self.mac_address = mac_address
        self.session = session
        super().__init__(f"Enforcement failed for {mac_address}: {message}")
