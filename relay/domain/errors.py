class RelayError(Exception):
    """Base exception for publish relay errors."""
    pass


class ConfigurationError(RelayError):
    pass


class StorageError(RelayError):
    """The backing store is unreachable or corrupt."""
    pass


class ValidationError(RelayError):
    """A request was rejected before anything was written."""
    pass


class UnknownTagError(ValidationError):
    def __init__(self, kind: str, value, allowed):
        self.kind = kind
        self.value = value
        self.allowed = list(allowed)
        super().__init__(f"Unknown {kind}: {value!r}. Available: {', '.join(self.allowed)}")


class AuthenticationRequired(RelayError):
    """No valid credential exists for the platform; the user must re-authenticate."""

    def __init__(self, platform: str, detail: str = ""):
        self.platform = platform
        self.detail = detail
        super().__init__(f"Authentication required: {detail or platform}")


class ExecutorError(RelayError):
    pass


class HandshakeError(RelayError):
    pass


class InvalidState(HandshakeError):
    def __init__(self, message: str = "The authentication session has expired. Please try again."):
        super().__init__(message)


class ProviderError(HandshakeError):
    """The OAuth provider redirected back with an error parameter."""

    def __init__(self, error: str):
        self.error = error
        super().__init__(f"Provider returned error: {error}")


class ExchangeFailure(HandshakeError):
    pass
