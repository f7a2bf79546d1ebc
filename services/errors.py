"""Failure kinds raised by the rental core.

Every failure aborts the operation that raised it. The HTTP layer renders
``kind`` and the message; nothing here is retried.
"""
from __future__ import annotations


class RentalServiceError(RuntimeError):
    """Base class for rental core failures."""

    kind = 'Error'
    status_code = 400

    def to_dict(self):
        return {'error': self.kind, 'message': str(self)}


class Unauthenticated(RentalServiceError):
    kind = 'Unauthenticated'
    status_code = 401


class Unapproved(RentalServiceError):
    kind = 'Unapproved'
    status_code = 403


class InsufficientRole(RentalServiceError):
    kind = 'InsufficientRole'
    status_code = 403


class NotFound(RentalServiceError):
    kind = 'NotFound'
    status_code = 404


class InsufficientStock(RentalServiceError):
    kind = 'InsufficientStock'
    status_code = 409


class InvalidAdjustment(RentalServiceError):
    kind = 'InvalidAdjustment'
    status_code = 409


class DuplicateCode(RentalServiceError):
    kind = 'DuplicateCode'
    status_code = 409


class DuplicatePendingRequest(RentalServiceError):
    kind = 'DuplicatePendingRequest'
    status_code = 409


class DuplicateProfile(RentalServiceError):
    kind = 'DuplicateProfile'
    status_code = 409


class AlreadyReviewed(RentalServiceError):
    kind = 'AlreadyReviewed'
    status_code = 409


class AlreadyReturned(RentalServiceError):
    kind = 'AlreadyReturned'
    status_code = 409


class InvalidSemester(RentalServiceError):
    kind = 'InvalidSemester'
    status_code = 409


class InvalidInput(RentalServiceError):
    kind = 'InvalidInput'
    status_code = 400


class StorageError(RentalServiceError):
    kind = 'StorageError'
    status_code = 500
