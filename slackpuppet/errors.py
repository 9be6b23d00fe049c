from typing import Optional


class BridgeError(Exception):
    """Base class for errors raised by the bridge core."""


class TransportError(BridgeError):
    """The connection to Slack was refused, rejected or lost during setup."""


class LookupFailure(BridgeError):
    """A Slack entity could not be fetched. Never escapes the client."""


class TranslationFailure(BridgeError):
    """A message could not be translated. Never escapes the formatters."""


class DeliveryError(BridgeError):
    """Slack rejected an outbound call."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code
