from enum import Enum

from mitmproxy import http

FAVICON_PATH = "/favicon.ico"


class ContentCategory(str, Enum):
    HTML = "html"
    JSON = "json"
    TEXT = "text"
    OTHER = "other"

    @property
    def handled(self) -> bool:
        return self is not ContentCategory.OTHER


def content_category(content_type: str) -> ContentCategory:
    """Picks the transformation strategy for a response content-type."""
    ct = (content_type or "").lower()
    if "text/html" in ct:
        return ContentCategory.HTML
    if "application/json" in ct or "+json" in ct:
        return ContentCategory.JSON
    if "text/plain" in ct:
        return ContentCategory.TEXT
    return ContentCategory.OTHER


class ScopeManager:
    """Decides which requests the proxy answers itself."""

    def __init__(self, reserved_paths=(FAVICON_PATH,)):
        self.reserved_paths = tuple(reserved_paths)

    def is_reserved(self, flow: http.HTTPFlow) -> bool:
        path = flow.request.path.split("?")[0]
        return path in self.reserved_paths
