"""Engine exception hierarchy."""


class EngineError(Exception):
    """Base class for engine errors.

    The message is a short machine-readable code (for example
    ``decryption_failed``) because it ends up in notification history
    and in API responses.
    """


class DecryptionError(EngineError):
    """Encrypted credential could not be decrypted."""


class ExchangeRateError(EngineError):
    """Exchange rate provider call failed or returned garbage."""


class ChannelNotConfiguredError(EngineError):
    """A delivery channel is missing its settings or credentials."""


class UnsupportedActionError(EngineError):
    """Callback carried an action the engine does not know."""
