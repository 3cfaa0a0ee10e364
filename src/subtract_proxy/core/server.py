import asyncio
import json
from typing import Optional
from urllib.parse import urlparse

import structlog
from mcp.server.fastmcp import FastMCP
from mitmproxy import options
from mitmproxy.tools.dump import DumpMaster
from pydantic import ValidationError

from ..config import Config, load_config
from ..models import RuleSet
from .addon import SubtractAddon
from .errors import AppError
from .interceptor import ResponseInterceptor
from .logs import configure_logging
from .pipeline import build_chain
from .robots import RobotsPolicyEngine
from .rules import RuleFilter
from .upstream import UpstreamClient
from .user_agent import UserAgentRotator

logger = structlog.get_logger()


class ProxyController:
    """Owns the proxy process state: mitmproxy master, chain, cache and pool."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self.master: Optional[DumpMaster] = None
        self.proxy_task: Optional[asyncio.Task] = None
        self.robots = RobotsPolicyEngine()
        self.rotator = UserAgentRotator(self.config.user_agent)
        self.chain = build_chain(self.config)
        self.interceptor = ResponseInterceptor(self.chain, self.config.development)
        self.addon = SubtractAddon(
            interceptor=self.interceptor,
            upstream=UpstreamClient(timeout=self.config.timeout_seconds),
            rotator=self.rotator,
            robots=self.robots,
            ignore_robots_txt=self.config.ignore_robots_txt,
            enforce_robots=self.config.robots.enforce,
            development=self.config.development,
        )
        self.running = False

    async def start(self, port: Optional[int] = None, host: Optional[str] = None):
        if self.running:
            return "The proxy's already running!"

        port = port or self.config.port
        host = host or self.config.host
        opts = options.Options(listen_host=host, listen_port=port)
        self.master = DumpMaster(
            opts,
            with_termlog=False,
            with_dumper=False,
        )
        # The addon answers every request; don't dial the origin first.
        self.master.options.update(connection_strategy="lazy")
        self.master.addons.add(self.addon)

        self.proxy_task = asyncio.create_task(self.master.run())
        self.running = True
        logger.info("proxy_started", host=host, port=port, filters=self.chain.names)
        return f"Started proxy on {host}:{port}"

    async def stop(self):
        if not self.running or not self.master:
            return "The proxy isn't running right now."
        self.master.shutdown()
        if self.proxy_task:
            try:
                await self.proxy_task
            except asyncio.CancelledError:
                pass
            self.proxy_task = None
        self.running = False
        logger.info("proxy_stopped")
        return "Stopped the proxy."

    def reload_rules(self) -> str:
        """Rebuilds the chain in place so the running addon picks it up."""
        self.chain.clear()
        for content_filter in build_chain(self.config).filters:
            self.chain.add(content_filter)
        return f"Loaded filters: {', '.join(self.chain.names) or 'none'}"

    def rule_filter(self) -> Optional[RuleFilter]:
        for content_filter in self.chain.filters:
            if isinstance(content_filter, RuleFilter):
                return content_filter
        return None


controller = ProxyController()

mcp = FastMCP("SubtractProxy")

# --- MCP Tools ---


@mcp.tool()
async def start_proxy(port: int = None, host: str = None) -> str:
    try:
        return await controller.start(port=port, host=host)
    except Exception as e:
        logger.error("proxy_start_failed", error=str(e))
        return f"Couldn't start the proxy: {str(e)}"


@mcp.tool()
async def stop_proxy() -> str:
    return await controller.stop()


@mcp.tool()
async def reload_rules() -> str:
    return controller.reload_rules()


@mcp.tool()
async def list_rule_sets() -> str:
    rule_filter = controller.rule_filter()
    if rule_filter is None:
        return "No rule filter is loaded."
    rule_sets = [
        {
            "name": rs.name,
            "enabled": rs.enabled,
            "condition": rs.condition.model_dump(exclude_none=True) if rs.condition else None,
            "rules": [
                {
                    "id": r.id,
                    "match_type": r.match_type,
                    "action": r.action,
                    "priority": r.priority,
                    "enabled": r.enabled,
                }
                for r in rs.rules
            ],
        }
        for rs in rule_filter.rule_sets
    ]
    return json.dumps(rule_sets, indent=2)


@mcp.tool()
async def add_rule_set(rule_set_json: str) -> str:
    """
    Add a rule set to the running rule filter, replacing one with the same name.
    Args:
        rule_set_json: Rule set as JSON, e.g.
            {"name": "ads", "rules": [{"name": "ad", "selector": ".ad", "action": "remove"}]}
    """
    rule_filter = controller.rule_filter()
    if rule_filter is None:
        return "No rule filter is loaded."
    try:
        rule_set = RuleSet.model_validate_json(rule_set_json)
    except ValidationError as e:
        return f"Invalid rule set: {e.error_count()} error(s)"

    replaced = rule_filter.add_rule_set(rule_set)
    return f"{'Replaced' if replaced else 'Added'} rule set '{rule_set.name}'."


@mcp.tool()
async def remove_rule_set(name: str) -> str:
    rule_filter = controller.rule_filter()
    if rule_filter is None:
        return "No rule filter is loaded."
    if rule_filter.remove_rule_set(name):
        return f"Removed rule set '{name}'."
    return f"No rule set named '{name}'."


@mcp.tool()
async def check_robots(url: str, user_agent: str = "*", force_refresh: bool = False) -> str:
    """
    Check whether robots.txt allows fetching a URL.
    Args:
        url: Absolute URL to check
        user_agent: User agent to resolve rules for
        force_refresh: Ignore the cached robots.txt
    """
    parsed = urlparse(url)
    if not parsed.hostname:
        return "The url needs to be absolute, e.g. https://example.com/page"

    path = parsed.path or "/"
    if parsed.query:
        path += f"?{parsed.query}"
    try:
        if force_refresh:
            await controller.robots.get_policy(parsed.hostname, force_refresh=True)
        blocked = await controller.robots.is_blocked(parsed.hostname, path, user_agent)
        delay = await controller.robots.crawl_delay(parsed.hostname, user_agent)
    except AppError as e:
        return f"Couldn't check robots.txt: {e.message}"

    return json.dumps(
        {"url": url, "user_agent": user_agent, "blocked": blocked, "crawl_delay": delay},
        indent=2,
    )


@mcp.tool()
async def clear_robots_cache(domain: str = None) -> str:
    controller.robots.clear_cache(domain)
    return f"Cleared robots.txt cache for {domain or 'all domains'}."


@mcp.tool()
async def next_user_agent() -> str:
    user_agent = controller.rotator.current()
    return user_agent or "User-Agent rewriting is disabled."


@mcp.tool()
async def add_user_agent(user_agent: str) -> str:
    controller.rotator.add_user_agent(user_agent)
    return f"Pool now has {len(controller.rotator.pool)} user agents."


@mcp.tool()
async def reset_user_agents() -> str:
    controller.rotator.reset()
    return f"Reset pool to {len(controller.rotator.pool)} user agents."


def start():
    """Entry point for running the server directly."""
    global controller
    config = load_config()
    configure_logging(config.logging.level, config.logging.file)
    controller = ProxyController(config)
    mcp.run()


if __name__ == "__main__":
    start()
