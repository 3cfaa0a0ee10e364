from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence, Tuple

import structlog
from curl_cffi.const import CurlECode
from curl_cffi.requests import AsyncSession, RequestsError

from .errors import AppError, NetworkError, ProxyError

logger = structlog.get_logger(__name__)

# curl already removed these framings from the body it hands back
DECODED_HEADERS = {"content-encoding", "transfer-encoding"}

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "upgrade",
}

Headers = List[Tuple[str, str]]


@dataclass
class UpstreamResponse:
    status_code: int
    headers: Headers
    chunks: AsyncIterator[bytes]

    def header(self, name: str, default: str = "") -> str:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return default


def _to_app_error(error: RequestsError, url: str) -> AppError:
    if getattr(error, "code", None) == CurlECode.OPERATION_TIMEDOUT:
        return ProxyError(f"Upstream timed out: {url}", {"url": url})
    return NetworkError(f"Upstream request failed: {error}", error, {"url": url})


class UpstreamClient:
    """Forwards requests to the origin and streams the response body back."""

    def __init__(self, timeout: float = 30.0, verify: bool = True):
        self.timeout = timeout
        self.verify = verify

    async def open(
        self,
        method: str,
        url: str,
        headers: Sequence[Tuple[str, str]],
        body: Optional[bytes] = None,
    ) -> UpstreamResponse:
        session = AsyncSession(timeout=self.timeout, verify=self.verify)
        try:
            response = await session.request(
                method=method,
                url=url,
                headers=list(headers),
                data=body or None,
                stream=True,
                allow_redirects=False,
            )
        except RequestsError as e:
            await session.close()
            raise _to_app_error(e, url) from e

        forwarded = [
            (key, value)
            for key, value in response.headers.multi_items()
            if key.lower() not in DECODED_HEADERS
            and key.lower() not in HOP_BY_HOP_HEADERS
        ]
        return UpstreamResponse(
            status_code=response.status_code,
            headers=forwarded,
            chunks=self._iter_body(session, response, url),
        )

    async def _iter_body(self, session, response, url) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_content():
                yield chunk
        except RequestsError as e:
            raise _to_app_error(e, url) from e
        finally:
            await response.aclose()
            await session.close()


def outbound_headers(
    fields: Sequence[Tuple[str, str]], user_agent: Optional[str] = None
) -> Headers:
    """
    Request headers to send upstream: Host is rewritten by curl from the
    target URL, hop-by-hop headers are dropped and curl negotiates encoding.
    """
    dropped = HOP_BY_HOP_HEADERS | {"host", "content-length", "accept-encoding"}
    if user_agent:
        dropped = dropped | {"user-agent"}

    headers = [(k, v) for k, v in fields if k.lower() not in dropped]
    if user_agent:
        headers.append(("User-Agent", user_agent))
    return headers
