"""
Error taxonomy shared by the services and the HTTP layer.

Every error carries a short human readable message; validation errors may
also carry a list of details. main.py renders them as
{"error": message, "details": [...]}.
"""
from typing import List, Optional

from fastapi import HTTPException


class APIError(HTTPException):
    status_code = 400

    def __init__(self, message: str, details: Optional[List[str]] = None, status_code: Optional[int] = None):
        super().__init__(status_code=status_code or self.status_code, detail=message)
        self.message = message
        self.details = details


class ValidationFailed(APIError):
    status_code = 400


class AuthenticationRequired(APIError):
    status_code = 401

    def __init__(self, message: str = "Authentication required", details: Optional[List[str]] = None):
        super().__init__(message, details)
        self.headers = {"WWW-Authenticate": "Bearer"}


class Forbidden(APIError):
    status_code = 403


class NotFound(APIError):
    status_code = 404


class Conflict(APIError):
    status_code = 409


class GatewayError(APIError):
    """The payment provider refused or failed a call."""

    status_code = 400


class InventoryError(Exception):
    """Stock could not be reserved or released."""

    def __init__(self, message: str, product_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.product_id = product_id
