"""Provider errors, mapped to HTTP status codes by the API layer."""


class ProviderUnavailable(Exception):
    """The external system behind a provider is not configured or unreachable."""


class NotFound(Exception):
    """The requested object does not exist."""
