from typing import Any, Dict, List, Optional


class ScreeningError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 500
    error = "Internal server error"

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.error, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ScreeningError):
    status_code = 400
    error = "Validation failed"


class NotReadyError(ScreeningError):
    """Results requested while the analysis is still running"""

    status_code = 400
    error = "Analysis not complete"

    def __init__(self, status: str):
        super().__init__(f"Analysis is currently {status}. Please wait for completion.")
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["status"] = self.status
        return body


class NotFoundError(ScreeningError):
    status_code = 404
    error = "Not found"


class ConflictError(ScreeningError):
    status_code = 400
    error = "Conflict"


class UpstreamError(ScreeningError):
    status_code = 502
    error = "Analysis submission failed"


class InternalError(ScreeningError):
    status_code = 500
    error = "Internal server error"
