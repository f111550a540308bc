class CosmicCVError(Exception):
    """Base class for errors raised by the backend."""


class ConfigurationError(CosmicCVError):
    """A required secret or endpoint is not configured."""


class SignatureError(CosmicCVError):
    """Webhook body does not match its signature header."""


class AuthenticationError(CosmicCVError):
    """Session token is missing, malformed, expired or forged."""


class StorageError(CosmicCVError):
    """The durable store could not complete a read or write."""


class AnalysisError(CosmicCVError):
    """The AI backend could not produce a report."""


class EmailDeliveryError(CosmicCVError):
    """No configured email provider accepted the message."""
