"""
Error code catalog for the OwnTracks backend.

Every error response carries one of these codes next to its message.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """
    Error codes returned in the ``error_code`` field.

    4xx codes mean the client can fix the request (bad report, wrong key,
    missing credentials, too many reports). 5xx codes mean the report was
    fine but the server could not handle it.
    """

    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Report is not a JSON object, or a location lacks usable lat/lon/tst (HTTP 400)"""

    DECODE_ERROR = "DECODE_ERROR"
    """Encrypted report failed base64, secretbox authentication or JSON decoding (HTTP 400)"""

    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    """No stored location has the requested id (HTTP 404)"""

    UNAUTHORIZED = "UNAUTHORIZED"
    """Basic auth header missing or credentials rejected (HTTP 401)"""

    RATE_LIMITED = "RATE_LIMITED"
    """Client IP exceeded its per-minute request allowance (HTTP 429)"""

    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    """SQLite read or write against the locations table failed (HTTP 500)"""

    INTERNAL_ERROR = "INTERNAL_ERROR"
    """Any other failure while handling the request; details stay in the logs (HTTP 500)"""


ERROR_CODE_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.DECODE_ERROR: 400,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.STORE_UNAVAILABLE: 500,
    ErrorCode.INTERNAL_ERROR: 500,
}


def get_default_status_code(error_code: ErrorCode) -> int:
    """HTTP status for an error code; unknown codes map to 500."""
    return ERROR_CODE_STATUS_MAP.get(error_code, 500)
