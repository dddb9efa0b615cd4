"""Setup-specific exceptions for Notchly."""


class SetupError(Exception):
    """Base exception for readiness pipeline operations."""

    pass


class InvalidTransitionError(SetupError):
    """Raised when an action is requested from a state that does not allow it."""

    def __init__(self, action: str, state: object):
        super().__init__(f"'{action}' is not allowed while setup is in state '{state}'")
        self.action = action
        self.state = state


class ControllerClosedError(SetupError):
    """Raised when an action is requested after the controller was torn down."""

    pass
