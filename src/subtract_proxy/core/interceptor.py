import json
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import structlog

from ..models import ProxyContext
from .chain import FilterChain, Redirect
from .errors import AppError, ProxyError, error_response
from .scope import content_category
from .upstream import UpstreamResponse
from .utils import decode_body, encode_body

logger = structlog.get_logger(__name__)


class InterceptState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FILTERING = "filtering"
    FLUSHING = "flushing"
    DONE = "done"
    ABORTED_UPSTREAM = "aborted_upstream"
    ABORTED_HANDLER = "aborted_handler"


class WriterState(str, Enum):
    BUFFERING = "buffering"
    FLUSHED = "flushed"


@dataclass
class FinalResponse:
    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    state: InterceptState = InterceptState.DONE

    def header(self, name: str, default: str = "") -> str:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return default


def with_length(headers, body: bytes) -> List[Tuple[str, str]]:
    framed = [(k, v) for k, v in headers if k.lower() != "content-length"]
    framed.append(("content-length", str(len(body))))
    return framed


def json_error_response(
    error: BaseException,
    development: bool = False,
    state: InterceptState = InterceptState.DONE,
    status_code: Optional[int] = None,
) -> FinalResponse:
    status, body = error_response(error, development)
    payload = json.dumps(body).encode("utf-8")
    return FinalResponse(
        status_code=status_code or status,
        headers=with_length([("content-type", "application/json")], payload),
        body=payload,
        state=state,
    )


class ResponseWriter:
    """Collects the body; nothing can be written once it has been flushed."""

    def __init__(self):
        self.state = WriterState.BUFFERING
        self._chunks: List[bytes] = []

    def _ensure_buffering(self):
        if self.state is not WriterState.BUFFERING:
            raise ProxyError("Response already flushed")

    def write(self, chunk: bytes):
        self._ensure_buffering()
        if chunk:
            self._chunks.append(chunk)

    def replace(self, body: bytes):
        self._ensure_buffering()
        self._chunks = [body]

    @property
    def body(self) -> bytes:
        return b"".join(self._chunks)

    def flush(self, status_code: int, headers) -> FinalResponse:
        self._ensure_buffering()
        body = self.body
        self.state = WriterState.FLUSHED
        return FinalResponse(
            status_code=status_code,
            headers=with_length(headers, body),
            body=body,
        )


class ResponseInterceptor:
    """
    Buffers one upstream response, runs it through the filter chain and
    emits it once with ``Content-Length`` recomputed::

        Idle -> Streaming -> Filtering -> Flushing -> Done
                   |             |
                   v             v
        Aborted(Upstream)   Aborted(Handler)
           502 / 503             500
    """

    def __init__(self, chain: Optional[FilterChain] = None, development: bool = False):
        self.chain = chain if chain is not None else FilterChain()
        self.development = development

    async def intercept(
        self, upstream: UpstreamResponse, context: ProxyContext
    ) -> FinalResponse:
        writer = ResponseWriter()

        try:
            async for chunk in upstream.chunks:
                writer.write(chunk)
        except Exception as e:
            error = e if isinstance(e, AppError) else ProxyError(
                f"Upstream stream failed: {e}", {"url": context.original_url}
            )
            logger.error(
                "upstream_aborted",
                url=context.original_url,
                error=str(e),
            )
            return json_error_response(
                error, self.development, InterceptState.ABORTED_UPSTREAM
            )

        try:
            redirect = await self._apply_chain(writer, context)
        except Exception as e:
            logger.exception("handler_aborted", url=context.original_url)
            return json_error_response(
                e, self.development, InterceptState.ABORTED_HANDLER, status_code=500
            )

        if redirect is not None:
            return FinalResponse(
                status_code=redirect.status_code,
                headers=with_length([("location", redirect.location)], b""),
                state=InterceptState.DONE,
            )

        return writer.flush(upstream.status_code, upstream.headers)

    async def _apply_chain(
        self, writer: ResponseWriter, context: ProxyContext
    ) -> Optional[Redirect]:
        if not len(self.chain) or not content_category(context.content_type).handled:
            return None

        original = writer.body
        text = decode_body(original, context.content_type)
        if text is None:
            logger.debug("body_not_decodable", url=context.original_url)
            return None

        result = await self.chain.apply(text, context)
        if result.redirect is not None:
            return result.redirect
        if result.content != text:
            writer.replace(encode_body(result.content, context.content_type, original))
        return None
