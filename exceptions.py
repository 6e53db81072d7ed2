"""Errors raised while resolving contact identities."""


class IdentityError(Exception):
    """Base exception for identity resolution errors."""

    status_code = 500


class InvalidInput(IdentityError):
    """Raised when a request carries neither an email nor a phone number."""

    status_code = 400


class InconsistentCluster(IdentityError):
    """Raised when a reconciled cluster does not have exactly one primary."""

    pass


class StoreError(IdentityError):
    """Base exception for record store failures."""

    pass


class StoreUnavailable(StoreError):
    """Raised when the store cannot be reached or a lookup fails."""

    status_code = 503


class StoreWriteFailed(StoreError):
    """Raised when persisting a contact fails."""

    pass


class DuplicateContact(StoreWriteFailed):
    """Raised when an insert collides with an existing contact."""

    status_code = 409
