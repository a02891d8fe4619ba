"""
HTTP exceptions raised by the API layer
"""

from fastapi import HTTPException, status


class ValidationError(HTTPException):
    """Validation error exception"""

    def __init__(self, detail: str = "Validation error"):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail
        )


class ConflictError(HTTPException):
    """A newer request replaced this one"""

    def __init__(self, detail: str = "Request superseded"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class ReconnectRequiredError(HTTPException):
    """Every requested account needs its marketplace connection renewed"""

    def __init__(self, detail: str = "Reconnect required", accounts: list[str] | None = None):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": detail, "accounts": accounts or []},
        )


class UpstreamError(HTTPException):
    """The marketplace failed for every requested account"""

    def __init__(self, detail: str = "Marketplace unavailable", errors: dict | None = None):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": detail, "errors": errors or {}},
        )
