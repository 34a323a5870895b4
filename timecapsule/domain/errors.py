from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    pass


class StoreUnavailableError(DomainDependencyError):
    """Transient item store failure; the affected item stays untouched."""


class ItemNotFoundError(DomainError):
    pass


class ItemNotEditableError(DomainInvariantError):
    pass


class SweepError(DomainDependencyError):
    """The sweep could not list due items at all."""
