from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Union

import structlog

from ..models import ProxyContext

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Redirect:
    """Early-exit signal: answer with a redirect instead of a body."""

    location: str
    status_code: int = 302


FilterOutput = Union[str, Redirect]


class ContentFilter(ABC):
    """One stage of the response pipeline."""

    name: str = "ContentFilter"

    @abstractmethod
    async def apply(self, content: str, context: ProxyContext) -> FilterOutput:
        ...


@dataclass
class ChainResult:
    content: str
    redirect: Optional[Redirect] = None
    failed: List[str] = field(default_factory=list)


class FilterChain:
    """Runs filters in registration order, isolating each one's failures."""

    def __init__(self, filters: Optional[List[ContentFilter]] = None):
        self.filters: List[ContentFilter] = list(filters or [])

    def add(self, content_filter: ContentFilter):
        self.filters.append(content_filter)
        logger.info("filter_added", filter=content_filter.name)

    def clear(self):
        self.filters.clear()

    def __len__(self) -> int:
        return len(self.filters)

    @property
    def names(self) -> List[str]:
        return [f.name for f in self.filters]

    async def apply(self, content: str, context: ProxyContext) -> ChainResult:
        result = ChainResult(content=content)
        for content_filter in self.filters:
            try:
                output = await content_filter.apply(result.content, context)
            except Exception as e:
                logger.error(
                    "filter_failed",
                    filter=content_filter.name,
                    url=context.original_url,
                    error=str(e),
                )
                result.failed.append(content_filter.name)
                continue

            if isinstance(output, Redirect):
                logger.info(
                    "filter_redirect",
                    filter=content_filter.name,
                    location=output.location,
                )
                result.redirect = output
                result.content = ""
                break
            result.content = output
        return result
