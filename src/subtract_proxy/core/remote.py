from abc import abstractmethod
from typing import Any, Dict, List, Optional

import structlog
from curl_cffi.requests import AsyncSession, RequestsError

from ..config import LLMConfig
from ..models import ProxyContext
from .chain import ContentFilter
from .errors import ConfigError, RemoteFilterError
from .prompt import process_prompt_template

logger = structlog.get_logger(__name__)

OLLAMA_BASE_URL = "http://localhost:11434"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class RemoteFilter(ContentFilter):
    """
    Sends the body to a chat model and returns its answer. Any failure is
    logged and the original content is returned.
    """

    name = "RemoteFilter"
    default_base_url = ""

    def __init__(self, config: LLMConfig):
        self.config = config
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")

    async def apply(self, content: str, context: ProxyContext) -> str:
        if not self.config.enabled or not content:
            return content
        try:
            return await self.complete(self.build_messages(content, context), content)
        except Exception as e:
            logger.error(
                "remote_filter_failed",
                filter=self.name,
                url=context.original_url,
                error=str(e),
            )
            return content

    def build_messages(self, content: str, context: ProxyContext) -> List[Dict[str, str]]:
        prompt = process_prompt_template(
            self.config.prompt,
            content,
            {
                "url": context.original_url,
                "method": context.method,
                "contentType": context.content_type,
                "userAgent": context.user_agent or "",
            },
        )
        return [
            {"role": "system", "content": prompt.system},
            {"role": "user", "content": prompt.user or content},
        ]

    @abstractmethod
    async def complete(self, messages: List[Dict[str, str]], content: str) -> str:
        ...

    async def post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            async with AsyncSession(timeout=self.config.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        except RequestsError as e:
            raise RemoteFilterError(f"Request to {url} failed: {e}", {"url": url}) from e

        if response.status_code >= 400:
            raise RemoteFilterError(
                f"{url} answered HTTP {response.status_code}",
                {"url": url, "status": response.status_code},
            )
        try:
            return response.json()
        except ValueError as e:
            raise RemoteFilterError(f"{url} returned invalid JSON", {"url": url}) from e


class OllamaFilter(RemoteFilter):
    name = "OllamaFilter"
    default_base_url = OLLAMA_BASE_URL

    async def complete(self, messages, content):
        data = await self.post_json(
            f"{self.base_url}/api/chat",
            {"model": self.config.model, "messages": messages, "stream": False},
        )
        try:
            return data["message"]["content"]
        except (KeyError, TypeError) as e:
            raise RemoteFilterError("Unexpected Ollama response shape") from e


class OpenRouterFilter(RemoteFilter):
    """OpenAI-compatible chat completions endpoint."""

    name = "OpenRouterFilter"
    default_base_url = OPENROUTER_BASE_URL

    def __init__(self, config: LLMConfig):
        if not config.api_key:
            raise ConfigError("OpenRouter filter needs an API key")
        super().__init__(config)

    async def complete(self, messages, content):
        data = await self.post_json(
            f"{self.base_url}/chat/completions",
            {
                "model": self.config.model,
                "messages": messages,
                "temperature": 0.7,
                "max_tokens": 1000,
            },
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "HTTP-Referer": "https://github.com/GOROman/SubtractProxy",
                "X-Title": "SubtractProxy",
            },
        )
        choices = data.get("choices") or []
        if not choices:
            return content
        return (choices[0].get("message") or {}).get("content") or content


def create_remote_filter(config: LLMConfig) -> Optional[RemoteFilter]:
    if not config.enabled:
        return None
    if config.type == "ollama":
        return OllamaFilter(config)
    if config.type == "openrouter":
        return OpenRouterFilter(config)
    raise ConfigError(f"Unsupported remote filter type: {config.type}")
