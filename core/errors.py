from typing import Any, Optional


class PRDError(Exception):
    """Base exception class for the PRD generator project."""
    pass

class ValidationError(PRDError):
    """Raised when caller input is empty or otherwise unusable. Never reaches the network."""
    pass

class ConfigError(PRDError):
    """Raised when there is an error in a configuration file."""
    pass

class ConfigurationError(ConfigError):
    """Raised when no LLM credential can be resolved in any scope."""

    def __init__(self, message: str, missing: Optional[list] = None):
        super().__init__(message)
        self.missing = list(missing or [])

class PersistenceError(PRDError):
    """Raised when the PRD store cannot read or write a record."""
    pass

class AuthenticationRequired(PRDError):
    """Raised when an HTTP caller presents no usable bearer token."""
    pass

class PermissionDenied(PRDError):
    """Raised when a caller may not touch a resource."""
    pass

class StreamParseError(PRDError):
    """Raised for a single malformed stream frame. Always skipped by the normalizer."""
    pass

# --- Upstream (LLM provider) failures ---

class ExternalToolError(PRDError):
    """Raised when an external tool or service fails."""

    retryable = False

    def __init__(self, message: str, status: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.status = status
        self.details = details

class UpstreamRateLimited(ExternalToolError):
    """HTTP 429 from the provider. The caller may retry after waiting."""
    retryable = True

class UpstreamQuotaExceeded(ExternalToolError):
    """HTTP 402 from the provider."""
    pass

class UpstreamCredentialInvalid(ExternalToolError):
    """HTTP 401/403 from the provider."""
    pass

class UpstreamTimeout(ExternalToolError):
    """The provider did not answer within REQUEST_TIMEOUT_SECONDS."""
    retryable = True

class UpstreamGenericFailure(ExternalToolError):
    """Any other upstream failure, carrying the upstream status and message."""
    pass
