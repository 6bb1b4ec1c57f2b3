class SignalingError(Exception):
    """Base class for signaling relay and negotiation failures."""


class ValidationError(SignalingError):
    """A request is missing a required field or carries an invalid one."""


class RelayTransportError(SignalingError):
    """The relay service (or the HTTP call reaching it) failed."""


class NegotiationError(SignalingError):
    """The peer connection rejected a description or candidate."""
