"""
Domain exceptions.

Routes translate these into HTTP errors (see alertrelay.main); the engine
itself records them on outcomes and deliveries instead of raising.
"""


class AlertRelayError(Exception):
    """Base class for all AlertRelay errors."""


class NotFoundError(AlertRelayError):
    """Requested record does not exist within the caller's organisation."""


class ConfigurationError(AlertRelayError):
    """Rule, action, channel or endpoint configuration is invalid."""


class ConflictError(AlertRelayError):
    """Operation is not allowed in the record's current state."""


class ChannelDeliveryError(AlertRelayError):
    """A notification channel rejected or failed to accept a message."""
