class QuotaError(Exception):
    """Base class for errors raised while fetching provider usage."""

    @property
    def is_auth_error(self) -> bool:
        return False


class CredentialMissing(QuotaError):
    """The account has no credential configured."""

    def __init__(self, message: str = "No API key configured"):
        super().__init__(message)


class TransportError(QuotaError):
    """Network failure or timeout."""

    def __init__(self, message: str):
        super().__init__(f"Network error: {message}")


class ProtocolError(QuotaError):
    """Non-success HTTP status, optionally with the provider's message."""

    AUTH_STATUSES = (401, 403)

    def __init__(self, status_code: int, message: str | None = None):
        self.status_code = status_code
        self.message = message
        if message:
            super().__init__(f"HTTP {status_code}: {message}")
        else:
            super().__init__(f"HTTP error: {status_code}")

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in self.AUTH_STATUSES


class DecodingError(QuotaError):
    """Payload was not the structure we expected."""

    def __init__(self, message: str = "Failed to decode response"):
        super().__init__(message)


class NoUsableData(QuotaError):
    """Every candidate endpoint was tried and none returned usable data."""

    def __init__(self, provider: str, message: str | None = None):
        self.provider = provider
        super().__init__(message or f"Unable to fetch usage or balance for {provider}")
