"""Errors raised while resolving, fetching and signing attestations.

Every error aborts the architecture it was raised for.
"""


class AttestationError(Exception):
    """Base class for all attestoci errors."""


class SignatureInvalid(AttestationError):
    """Raised when a signature does not match the expected signer identity."""


class NotFoundError(AttestationError):
    """Raised when an expected manifest, platform, annotation or layer is missing."""


class AmbiguousError(AttestationError):
    """Raised when the registry returns more than one match for a unique item."""


class TransferError(AttestationError):
    """Raised when the registry cannot be reached or returns bad content."""


class AuthenticationError(TransferError):
    """Raised when authentication fails."""


class SigningError(AttestationError):
    """Raised when a signature bundle could not be produced."""


class SelfVerificationFailure(AttestationError):
    """Raised when a freshly produced bundle fails to verify against its own identity."""
