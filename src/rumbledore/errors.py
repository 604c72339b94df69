"""
Error taxonomy for identity resolution.

Every error raised by the identity services derives from IdentityError so
API layers can map them to responses in one place:

- NotFound: missing identity, mapping, match or audit entry
- InvalidOperation: degenerate merge/split arguments, illegal state changes
- ValidationError: out-of-range confidence factors, malformed names
- ExternalSignalUnavailable: statistics lookup failed (non-fatal)
- ConcurrentModification: identity changed underneath the caller (retry)
"""


class IdentityError(Exception):
    """Base class for identity resolution errors."""


class NotFound(IdentityError):
    """A referenced identity, mapping, match or audit entry does not exist."""


class InvalidOperation(IdentityError):
    """The requested operation is not valid for the given arguments or state."""


class ImmutableRecordError(InvalidOperation):
    """An attempt was made to change a write-once field or an audit entry."""


class ValidationError(IdentityError):
    """Input data is outside the accepted range or shape."""


class ExternalSignalUnavailable(IdentityError):
    """An external signal could not be fetched; callers degrade the factor."""


class ConcurrentModification(IdentityError):
    """The identity was modified concurrently; the caller should retry."""
