class SensorHubError(Exception):
    """Base class for errors surfaced by the relay."""


class ValidationError(SensorHubError, ValueError):
    """Caller-supplied input failed a whitelist or type check."""


class MalformedMessage(ValidationError):
    """An inbound device payload could not be parsed or is missing fields."""


class TransportUnavailable(SensorHubError):
    """The broker is not connected or did not accept a publish. Retryable."""


class StoreUnavailable(SensorHubError):
    """The database could not be reached after bounded retries."""
