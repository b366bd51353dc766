"""Exception taxonomy shared by the gateway and the provider adapters."""


class ConfigurationError(RuntimeError):
    """A provider cannot be built, usually because credentials are missing."""


class ProviderError(RuntimeError):
    """The speech provider misbehaved."""


class StreamStartError(ProviderError):
    pass


class StreamWriteError(ProviderError):
    pass


class CompletionError(RuntimeError):
    """The completion provider failed, retries included."""
