from __future__ import annotations


class LedgerError(Exception):
    error_code = 'LEDGER_ERROR'
    status_code = 500

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(LedgerError):
    error_code = 'NOT_FOUND'
    status_code = 404

    def __init__(self, resource: str, resource_id: object | None = None) -> None:
        message = f'{resource} not found'
        if resource_id is not None:
            message = f'{resource} {resource_id} not found'
        super().__init__(message, details={'resource': resource, 'resource_id': resource_id})


class ValidationError(LedgerError):
    error_code = 'VALIDATION_ERROR'
    status_code = 400


class InvalidStateError(LedgerError):
    error_code = 'INVALID_STATE'
    status_code = 409


class ImmutableDocumentError(InvalidStateError):
    error_code = 'IMMUTABLE_DOCUMENT'


class ConcurrencyConflictError(LedgerError):
    error_code = 'CONCURRENCY_CONFLICT'
    status_code = 409


class DependencyError(LedgerError):
    error_code = 'DEPENDENCY_ERROR'
    status_code = 502


class FeatureNotImplementedError(LedgerError):
    error_code = 'NOT_IMPLEMENTED'
    status_code = 501
