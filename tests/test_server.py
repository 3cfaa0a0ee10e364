import json

import pytest

from subtract_proxy.config import Config
from subtract_proxy.core import server
from subtract_proxy.core.server import ProxyController


@pytest.fixture
def rules_file(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(
        json.dumps(
            {
                "enabled": True,
                "ruleSets": [
                    {"name": "ads", "rules": [{"name": "ad", "selector": ".ad", "action": "remove"}]}
                ],
            }
        )
    )
    return path


@pytest.fixture
def controller(monkeypatch, rules_file):
    config = Config(
        filtering={"enabled": True, "configPath": str(rules_file)},
        userAgent={"enabled": True, "presets": ["A", "B"]},
    )
    ctl = ProxyController(config)
    monkeypatch.setattr(server, "controller", ctl)
    return ctl


def test_reload_rules_updates_running_chain(controller, rules_file):
    chain = controller.chain
    assert chain.names == ["RuleFilter"]

    rules_file.write_text(
        json.dumps(
            {
                "enabled": True,
                "ruleSets": [],
                "paramRules": [{"pattern": "^utm_"}],
            }
        )
    )
    message = controller.reload_rules()

    assert controller.chain is chain
    assert controller.interceptor.chain is chain
    assert chain.names == ["ParamFilter", "RuleFilter"]
    assert "ParamFilter" in message


@pytest.mark.asyncio
async def test_list_rule_sets(controller):
    rule_sets = json.loads(await server.list_rule_sets())
    assert rule_sets[0]["name"] == "ads"
    assert rule_sets[0]["rules"][0]["match_type"] == "selector"


@pytest.mark.asyncio
async def test_user_agent_tools(controller):
    assert await server.next_user_agent() == "A"
    assert "3 user agents" in await server.add_user_agent("C")
    assert "2 user agents" in await server.reset_user_agents()


@pytest.mark.asyncio
async def test_check_robots_needs_absolute_url(controller):
    assert "absolute" in await server.check_robots("/relative")


@pytest.mark.asyncio
async def test_check_robots(controller):
    async def fetcher(url):
        return 200, "User-agent: *\nDisallow: /private\n"

    controller.robots.fetcher = fetcher

    result = json.loads(await server.check_robots("https://example.com/private/x"))
    assert result["blocked"] is True
    assert "example.com" in controller.robots.cache

    await server.clear_robots_cache("example.com")
    assert controller.robots.cache == {}


@pytest.mark.asyncio
async def test_stop_when_not_running(controller):
    assert "isn't running" in await server.stop_proxy()


@pytest.mark.asyncio
async def test_add_and_remove_rule_set_tools(controller):
    added = await server.add_rule_set(
        '{"name": "words", "rules": [{"name": "w", "pattern": "foo", "action": "remove"}]}'
    )
    assert added == "Added rule set 'words'."
    names = [rs["name"] for rs in json.loads(await server.list_rule_sets())]
    assert names == ["ads", "words"]

    replaced = await server.add_rule_set('{"name": "words", "rules": []}')
    assert replaced == "Replaced rule set 'words'."

    assert await server.remove_rule_set("words") == "Removed rule set 'words'."
    assert await server.remove_rule_set("words") == "No rule set named 'words'."


@pytest.mark.asyncio
async def test_add_rule_set_rejects_invalid_json(controller):
    result = await server.add_rule_set('{"name": "bad", "rules": [{"name": "r", "pattern": "("}]}')
    assert result.startswith("Invalid rule set")
    assert [rs.name for rs in controller.rule_filter().rule_sets] == ["ads"]
