import pytest

from subtract_proxy.core.errors import ConfigError
from subtract_proxy.core.robots import RobotsPolicyEngine, parse_robots_txt, path_matches

ROBOTS = """
# example robots.txt
User-agent: *
Disallow: /private/
Allow: /private/public/
Crawl-delay: 2

User-agent: BadBot
Disallow: /
"""


class FakeFetcher:
    def __init__(self, status=200, body=ROBOTS):
        self.status = status
        self.body = body
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        return self.status, self.body


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_parse_robots_txt():
    blocks = parse_robots_txt(ROBOTS)

    assert [b.user_agent for b in blocks] == ["*", "badbot"]
    assert blocks[0].disallow == ["/private/"]
    assert blocks[0].allow == ["/private/public/"]
    assert blocks[0].crawl_delay == 2.0
    assert blocks[1].disallow == ["/"]


def test_parse_skips_empty_values_and_orphan_lines():
    blocks = parse_robots_txt("Disallow: /x\nUser-agent: *\nDisallow:\nCrawl-delay: soon\n")
    assert len(blocks) == 1
    assert blocks[0].disallow == []
    assert blocks[0].crawl_delay is None


@pytest.mark.parametrize(
    "path,pattern,expected",
    [
        ("/private/x", "/private/", True),
        ("/public", "/private/", False),
        ("/files/a.pdf", "/*.pdf$", True),
        ("/files/a.pdf?x=1", "/*.pdf$", False),
        ("/Private/x", "/private/", True),
        ("/a.b", "/a.b", True),
        ("/axb", "/a.b", False),
    ],
)
def test_path_matches(path, pattern, expected):
    assert path_matches(path, pattern) is expected


@pytest.mark.asyncio
async def test_allow_overrides_disallow():
    engine = RobotsPolicyEngine(fetcher=FakeFetcher())

    assert await engine.is_blocked("example.com", "/private/x", "*") is True
    assert await engine.is_blocked("example.com", "/private/public/y", "*") is False
    assert await engine.is_blocked("example.com", "/other", "*") is False


@pytest.mark.asyncio
async def test_specific_user_agent_block_wins():
    engine = RobotsPolicyEngine(fetcher=FakeFetcher())

    assert await engine.is_blocked("example.com", "/anything", "BadBot") is True
    assert await engine.is_blocked("example.com", "/anything", "GoodBot") is False


@pytest.mark.asyncio
async def test_policy_cached_within_ttl():
    fetcher = FakeFetcher()
    clock = Clock()
    engine = RobotsPolicyEngine(fetcher=fetcher, ttl=60, clock=clock)

    await engine.get_policy("example.com")
    clock.now += 59
    await engine.get_policy("example.com")
    assert fetcher.urls == ["https://example.com/robots.txt"]

    clock.now += 2
    await engine.get_policy("example.com")
    assert len(fetcher.urls) == 2


@pytest.mark.asyncio
async def test_force_refresh_refetches():
    fetcher = FakeFetcher()
    engine = RobotsPolicyEngine(fetcher=fetcher)

    await engine.get_policy("example.com")
    await engine.get_policy("example.com", force_refresh=True)
    assert len(fetcher.urls) == 2


@pytest.mark.asyncio
async def test_missing_robots_means_no_policy():
    engine = RobotsPolicyEngine(fetcher=FakeFetcher(status=404, body=""))

    assert await engine.get_policy("example.com") is None
    assert await engine.is_blocked("example.com", "/private/", "*") is False
    assert "example.com" not in engine.cache


@pytest.mark.asyncio
async def test_server_error_raises_config_error():
    engine = RobotsPolicyEngine(fetcher=FakeFetcher(status=500, body=""))

    with pytest.raises(ConfigError) as exc:
        await engine.get_policy("example.com")
    assert exc.value.metadata == {"domain": "example.com", "status": 500}


@pytest.mark.asyncio
async def test_crawl_delay():
    engine = RobotsPolicyEngine(fetcher=FakeFetcher())
    assert await engine.crawl_delay("example.com", "*") == 2.0
    assert await engine.crawl_delay("example.com", "badbot") is None


@pytest.mark.asyncio
async def test_clear_cache():
    fetcher = FakeFetcher()
    engine = RobotsPolicyEngine(fetcher=fetcher)
    await engine.get_policy("a.com")
    await engine.get_policy("b.com")

    engine.clear_cache("a.com")
    assert list(engine.cache) == ["b.com"]

    engine.clear_cache()
    assert engine.cache == {}
