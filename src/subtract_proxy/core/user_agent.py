import random
from typing import List, Optional

from ..config import UserAgentConfig

DEFAULT_USER_AGENTS = [
    # Desktop
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:123.0) Gecko/20100101 Firefox/123.0",
    # Mobile
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_3_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Linux; Android 14) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.6261.90 Mobile Safari/537.36",
]


class UserAgentRotator:
    """
    Picks the outbound User-Agent. Disabled gives None; a fixed ``value``
    always wins; ``rotate`` goes round-robin over a pool shuffled on reset;
    otherwise the first pool entry is used.
    """

    def __init__(self, config: UserAgentConfig, rng: Optional[random.Random] = None):
        self.config = config
        self.rng = rng or random.Random()
        self.index = 0
        self.pool: List[str] = []
        self.reset()

    def current(self) -> Optional[str]:
        if not self.config.enabled:
            return None
        if self.config.value:
            return self.config.value
        if self.config.rotate:
            return self._next()
        return self.pool[0]

    def _next(self) -> str:
        user_agent = self.pool[self.index]
        self.index = (self.index + 1) % len(self.pool)
        return user_agent

    def _shuffle(self):
        # Fisher-Yates
        for i in range(len(self.pool) - 1, 0, -1):
            j = self.rng.randint(0, i)
            self.pool[i], self.pool[j] = self.pool[j], self.pool[i]

    def add_user_agent(self, user_agent: str):
        if user_agent not in self.pool:
            self.pool.append(user_agent)

    def reset(self):
        self.index = 0
        presets = self.config.presets or DEFAULT_USER_AGENTS
        self.pool = list(dict.fromkeys(presets))
        if self.config.rotate:
            self._shuffle()
