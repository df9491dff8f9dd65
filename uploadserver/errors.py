from typing import Any, Dict, Optional


class UploadServerError(Exception):
    """Base class for request-scoped failures rendered as HTTP errors."""

    status_code = 500
    reason = "internal_error"

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": str(self),
            "reason": self.reason,
            "status": self.status_code,
        }
        if self.detail:
            payload["detail"] = self.detail
        return payload


class PathTraversalError(UploadServerError):
    """Raised when a request path would escape the serving root."""

    status_code = 403
    reason = "path_traversal"


class PermissionDeniedError(UploadServerError):
    """Raised when the server process may not read a path under the root."""

    status_code = 403
    reason = "permission_denied"


class NotFoundError(UploadServerError):
    status_code = 404
    reason = "not_found"


class InvalidNameError(UploadServerError):
    """Raised when an uploaded filename cannot be turned into a bare name."""

    status_code = 400
    reason = "invalid_filename"


class InvalidRequestError(UploadServerError):
    status_code = 400
    reason = "invalid_request"


class UploadTooLargeError(UploadServerError):
    status_code = 413
    reason = "too_large"


class UploadIOError(UploadServerError):
    """Raised when writing an upload fails; the partial file is already gone."""

    status_code = 500
    reason = "upload_io_error"


class MethodNotAllowedError(UploadServerError):
    status_code = 405
    reason = "method_not_allowed"
