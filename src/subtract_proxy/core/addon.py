from typing import Optional

import structlog
from mitmproxy import http

from ..models import ProxyContext
from .errors import AppError, ProxyError, RobotsDisallowedError
from .interceptor import FinalResponse, ResponseInterceptor, json_error_response
from .robots import RobotsPolicyEngine
from .scope import ScopeManager
from .upstream import UpstreamClient, outbound_headers
from .user_agent import UserAgentRotator

logger = structlog.get_logger(__name__)

SPOOFED_USER_AGENT = "SubtractProxy/1.0"


def _encode(value: str) -> bytes:
    return value.encode("utf-8", "surrogateescape")


def to_mitmproxy(final: FinalResponse) -> http.Response:
    return http.Response.make(
        final.status_code,
        final.body,
        [(_encode(k), _encode(v)) for k, v in final.headers],
    )


class SubtractAddon:
    """
    Answers every request itself: forwards upstream, filters the body and
    sets ``flow.response`` so mitmproxy never contacts the origin.
    """

    def __init__(
        self,
        interceptor: ResponseInterceptor,
        upstream: UpstreamClient,
        rotator: Optional[UserAgentRotator] = None,
        robots: Optional[RobotsPolicyEngine] = None,
        scope: Optional[ScopeManager] = None,
        ignore_robots_txt: bool = False,
        enforce_robots: bool = False,
        development: bool = False,
    ):
        self.interceptor = interceptor
        self.upstream = upstream
        self.rotator = rotator
        self.robots = robots
        self.scope = scope or ScopeManager()
        self.ignore_robots_txt = ignore_robots_txt
        self.enforce_robots = enforce_robots
        self.development = development

    def outbound_user_agent(self) -> Optional[str]:
        if self.ignore_robots_txt:
            return SPOOFED_USER_AGENT
        if self.rotator is not None:
            return self.rotator.current()
        return None

    async def request(self, flow: http.HTTPFlow):
        if flow.response is not None:
            return

        if self.scope.is_reserved(flow):
            flow.response = http.Response.make(204)
            return

        fields = [(k, v) for k, v in flow.request.headers.items(multi=True)]
        headers = outbound_headers(fields, self.outbound_user_agent())
        user_agent = next(
            (v for k, v in headers if k.lower() == "user-agent"), None
        )

        if await self._blocked_by_robots(flow, user_agent):
            error = RobotsDisallowedError(
                "Blocked by robots.txt",
                {"url": flow.request.url, "userAgent": user_agent or "*"},
            )
            flow.response = to_mitmproxy(json_error_response(error, self.development))
            return

        try:
            upstream = await self.upstream.open(
                flow.request.method,
                flow.request.url,
                headers,
                flow.request.raw_content,
            )
        except Exception as e:
            error = e if isinstance(e, AppError) else ProxyError(
                f"Upstream request failed: {e}", {"url": flow.request.url}
            )
            logger.error("upstream_failed", url=flow.request.url, error=str(e))
            flow.response = to_mitmproxy(json_error_response(error, self.development))
            return

        context = ProxyContext(
            original_url=flow.request.url,
            method=flow.request.method,
            headers={k.lower(): v for k, v in upstream.headers},
            content_type=upstream.header("content-type"),
            status_code=upstream.status_code,
            user_agent=user_agent,
        )
        final = await self.interceptor.intercept(upstream, context)
        flow.response = to_mitmproxy(final)
        logger.info(
            "request_proxied",
            url=flow.request.url,
            status=final.status_code,
            size=len(final.body),
            state=final.state.value,
        )

    async def _blocked_by_robots(self, flow: http.HTTPFlow, user_agent: Optional[str]) -> bool:
        if not self.enforce_robots or self.ignore_robots_txt or self.robots is None:
            return False
        try:
            return await self.robots.is_blocked(
                flow.request.host, flow.request.path, user_agent or "*"
            )
        except AppError as e:
            # fail open
            logger.warning("robots_check_failed", host=flow.request.host, error=e.message)
            return False
