class TrackingError(ValueError):
    """Base class for rejected tracking beacons."""


class ValidationError(TrackingError):
    """Malformed beacon: missing visitor id, unknown event type, and so on."""


class NotFoundError(TrackingError):
    """Beacon references a session, page view or lead that does not exist.

    For an unknown session token the client is expected to start a new session.
    """
