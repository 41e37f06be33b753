"""Custom exception hierarchy for shellkeep."""


class KeepError(Exception):
    """Base for all fatal shellkeep errors."""


class RcFileNotFoundError(KeepError):
    """The shell initialization file to patch does not exist."""


class NoTransportError(KeepError):
    """No download mechanism is available."""


class BlockVerificationError(KeepError):
    """The begin marker was not found after writing the block."""


class InvalidPayloadPathError(KeepError):
    """The configured worker payload path is not absolute."""


class UnknownCommandError(KeepError):
    """Command name is not registered in the guard's dispatch table."""


class TransportError(Exception):
    """A single fetch attempt failed. Always retried."""


class PayloadValidationError(Exception):
    """Fetched content failed validation. Always retried."""
