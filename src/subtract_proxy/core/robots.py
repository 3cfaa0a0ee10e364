import re
import time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from curl_cffi.requests import AsyncSession, RequestsError

from ..models import PolicyBlock, RobotsPolicy
from .errors import ConfigError, NetworkError

logger = structlog.get_logger(__name__)

DEFAULT_TTL = 3600.0

# (url) -> (status_code, body)
RobotsFetcher = Callable[[str], Awaitable[Tuple[int, str]]]


def parse_robots_txt(content: str) -> List[PolicyBlock]:
    blocks: List[PolicyBlock] = []
    current: Optional[PolicyBlock] = None

    for line in content.splitlines():
        line = line.split("#", 1)[0].strip().lower()
        if not line or ":" not in line:
            continue

        field, value = line.split(":", 1)
        field = field.strip()
        value = value.strip()

        if field == "user-agent":
            if current is not None:
                blocks.append(current)
            current = PolicyBlock(user_agent=value)
        elif current is None:
            continue
        elif field == "allow":
            if value:
                current.allow.append(value)
        elif field == "disallow":
            if value:
                current.disallow.append(value)
        elif field == "crawl-delay":
            try:
                current.crawl_delay = float(value)
            except ValueError:
                pass

    if current is not None:
        blocks.append(current)
    return blocks


def robots_pattern(pattern: str) -> re.Pattern:
    """robots.txt glob: ``*`` is any run of characters, ``$`` ends the path."""
    anchored = pattern.endswith("$")
    body = pattern[:-1] if anchored else pattern
    regex = ".*".join(re.escape(part) for part in body.lower().split("*"))
    return re.compile("^" + regex + ("$" if anchored else ""))


def path_matches(path: str, pattern: str) -> bool:
    return robots_pattern(pattern).match(path.lower()) is not None


async def fetch_robots_txt(url: str, timeout: float = 10.0) -> Tuple[int, str]:
    try:
        async with AsyncSession(timeout=timeout) as client:
            response = await client.get(url)
        return response.status_code, response.text
    except RequestsError as e:
        raise NetworkError(
            f"Couldn't fetch {url}: {e}", e, {"url": url}
        ) from e


class RobotsPolicyEngine:
    """
    Fetches and caches robots.txt policies per domain for ``ttl`` seconds.
    A missing robots.txt (404) means no policy; any other failure is raised
    and the caller decides whether to fail open.
    """

    def __init__(
        self,
        fetcher: Optional[RobotsFetcher] = None,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.fetcher = fetcher or fetch_robots_txt
        self.ttl = ttl
        self.clock = clock
        self.cache: Dict[str, RobotsPolicy] = {}

    async def get_policy(
        self, domain: str, force_refresh: bool = False
    ) -> Optional[RobotsPolicy]:
        now = self.clock()
        cached = self.cache.get(domain)
        if not force_refresh and cached is not None and cached.is_valid(now):
            logger.debug("robots_cache_hit", domain=domain)
            return cached

        url = f"https://{domain}/robots.txt"
        status, text = await self.fetcher(url)

        if status == 404:
            logger.info("robots_not_found", domain=domain)
            return None
        if not 200 <= status < 300:
            logger.error("robots_fetch_failed", domain=domain, status=status)
            raise ConfigError(
                f"Couldn't fetch robots.txt for {domain} (HTTP {status})",
                {"domain": domain, "status": status},
            )

        policy = RobotsPolicy(
            domain=domain,
            blocks=parse_robots_txt(text),
            content=text,
            fetched_at=now,
            expiry=now + self.ttl,
        )
        self.cache[domain] = policy
        logger.debug("robots_cached", domain=domain, blocks=len(policy.blocks))
        return policy

    async def is_blocked(self, domain: str, path: str, user_agent: str) -> bool:
        policy = await self.get_policy(domain)
        if policy is None:
            return False

        block = policy.block_for(user_agent)
        if block is None:
            return False

        if any(path_matches(path, allowed) for allowed in block.allow):
            return False
        return any(path_matches(path, disallowed) for disallowed in block.disallow)

    async def crawl_delay(self, domain: str, user_agent: str) -> Optional[float]:
        policy = await self.get_policy(domain)
        if policy is None:
            return None
        block = policy.block_for(user_agent)
        return block.crawl_delay if block else None

    def clear_cache(self, domain: Optional[str] = None):
        if domain:
            self.cache.pop(domain, None)
            logger.debug("robots_cache_cleared", domain=domain)
        else:
            self.cache.clear()
            logger.debug("robots_cache_cleared_all")
