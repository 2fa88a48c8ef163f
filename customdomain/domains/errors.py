"""
Exceptions raised by the custom domain core.
"""


class ValidationError(ValueError):
    """A creation request was rejected; nothing was persisted."""

    code = "invalid"

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        if code:
            self.code = code


class InvalidHostname(ValidationError):
    code = "invalid_hostname"


class BlocklistedHostname(ValidationError):
    code = "blocklisted"


class HostnameTaken(ValidationError):
    code = "hostname_taken"


class QuotaExceeded(ValidationError):
    code = "quota_exceeded"


class DomainNotFound(LookupError):
    """No domain with the given id."""
    pass


class DomainStateError(Exception):
    """Operation not allowed in the domain's current state."""
    pass


class ProvisioningError(Exception):
    """Base class for certificate provider failures."""
    pass


class ProvisioningTransientError(ProvisioningError):
    """Timeout, connection failure or 5xx; retried on a later tick."""
    pass


class ProvisioningFatalError(ProvisioningError):
    """Definitive rejection by the provider."""
    pass
