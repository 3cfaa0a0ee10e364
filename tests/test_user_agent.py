import random

from subtract_proxy.config import UserAgentConfig
from subtract_proxy.core.user_agent import DEFAULT_USER_AGENTS, UserAgentRotator


def rotator(**kwargs):
    return UserAgentRotator(UserAgentConfig(**kwargs), rng=random.Random(7))


def test_disabled_returns_none():
    assert rotator(enabled=False, value="Fixed/1.0").current() is None


def test_fixed_value_wins_over_rotation():
    ua = rotator(enabled=True, value="Fixed/1.0", rotate=True, presets=["A", "B"])
    assert [ua.current() for _ in range(3)] == ["Fixed/1.0"] * 3


def test_rotation_cycles_through_pool():
    ua = rotator(enabled=True, rotate=True, presets=["A", "B", "C"])
    seen = [ua.current() for _ in range(6)]

    assert sorted(seen[:3]) == ["A", "B", "C"]
    assert seen[3:] == seen[:3]
    assert all(a != b for a, b in zip(seen, seen[1:]))


def test_without_rotation_first_entry_is_used():
    ua = rotator(enabled=True, presets=["A", "B", "C"])
    assert [ua.current() for _ in range(3)] == ["A", "A", "A"]


def test_empty_presets_fall_back_to_defaults():
    ua = rotator(enabled=True, presets=[])
    assert ua.pool == DEFAULT_USER_AGENTS


def test_duplicate_presets_are_collapsed():
    ua = rotator(enabled=True, presets=["A", "A", "B"])
    assert ua.pool == ["A", "B"]


def test_add_and_reset():
    ua = rotator(enabled=True, presets=["A"])

    ua.add_user_agent("B")
    ua.add_user_agent("B")
    assert ua.pool == ["A", "B"]

    ua.reset()
    assert ua.pool == ["A"]


def test_added_agent_joins_rotation():
    ua = rotator(enabled=True, rotate=True, presets=["A", "B"])
    ua.add_user_agent("C")
    assert sorted(ua.current() for _ in range(3)) == ["A", "B", "C"]
