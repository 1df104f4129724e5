"""
API error types mapped onto HTTP status codes
"""
from typing import Optional

from fastapi import HTTPException


class APIError(HTTPException):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(status_code=status_code or self.status_code, detail=message)


class AuthenticationError(APIError):
    status_code = 401


class PermissionDeniedError(APIError):
    status_code = 403


class ResourceNotFoundError(APIError):
    status_code = 404

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found" if identifier is None else f"{resource} '{identifier}' not found"
        super().__init__(message)


class ConflictError(APIError):
    status_code = 409


def raise_for_service_error(exc: Exception) -> None:
    """Re-raise a service exception carrying message/status_code as the matching HTTP error"""
    status_code = getattr(exc, 'status_code', None) or 500
    message = getattr(exc, 'message', None) or str(exc)
    raise APIError(message, status_code) from exc
