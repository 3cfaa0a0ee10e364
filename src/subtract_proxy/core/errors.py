import traceback
from typing import Any, Dict, Optional, Tuple


class AppError(Exception):
    """Base error. ``code`` is stable and ends up in the JSON body."""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "APP_ERROR",
        metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.metadata = metadata

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message": self.message, "code": self.code}
        if self.metadata:
            body["metadata"] = self.metadata
        return body


class NetworkError(AppError):
    """Transport failure talking to an upstream host."""

    status_code = 503

    def __init__(
        self,
        message: str,
        original_error: Optional[BaseException] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, "NETWORK_ERROR", metadata)
        self.__cause__ = original_error


class ConfigError(AppError):
    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIG_ERROR", metadata)


class ProxyError(AppError):
    status_code = 502

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PROXY_ERROR", metadata)


class RobotsDisallowedError(AppError):
    status_code = 403

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message, "ROBOTS_DISALLOWED", metadata)


class RemoteFilterError(AppError):
    """The remote content model failed or answered something unusable."""

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message, "LLM_ERROR", metadata)


def is_app_error(error: BaseException) -> bool:
    return isinstance(error, AppError)


def error_response(
    error: BaseException, development: bool = False
) -> Tuple[int, Dict[str, Any]]:
    """Map an exception to ``(status_code, body)``.

    Unknown exceptions are reported as a generic 500 so internals never leak
    unless ``development`` is set, in which case the traceback is included.
    """
    if is_app_error(error):
        status = error.status_code
        body = error.to_dict()
    else:
        status = 500
        body = {
            "message": "Internal server error",
            "code": "INTERNAL_SERVER_ERROR",
        }

    if development and error.__traceback__ is not None:
        body["stack"] = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    return status, body
