import re
from typing import List
from urllib.parse import parse_qsl, urlencode, urlsplit

import structlog

from ..models import FilterConfig, ParamRule, ProxyContext
from .chain import ContentFilter, FilterOutput, Redirect

logger = structlog.get_logger(__name__)


def collect_param_rules(config: FilterConfig) -> List[ParamRule]:
    """Top-level paramRules plus every enabled removeParam rule."""
    rules = list(config.param_rules)
    for rule_set in config.rule_sets:
        if not rule_set.enabled:
            continue
        for rule in rule_set.rules:
            if rule.enabled and rule.match_type == "removeParam":
                rules.append(ParamRule(pattern=rule.pattern, name=rule.name))
    return rules


def strip_params(url: str, rules: List[ParamRule]):
    """
    Returns (path_and_query, removed_keys) with every query parameter whose
    name matches an enabled rule removed. Order of the rest is kept.
    """
    parts = urlsplit(url)
    params = parse_qsl(parts.query, keep_blank_values=True)
    keys = {key for key, _ in params}

    removed = set()
    for rule in rules:
        if not rule.enabled:
            continue
        pattern = re.compile(rule.pattern)
        removed.update(key for key in keys if pattern.search(key))

    path = parts.path or "/"
    if not removed:
        return path + (f"?{parts.query}" if parts.query else ""), []

    kept = [(key, value) for key, value in params if key not in removed]
    query = urlencode(kept)
    return path + (f"?{query}" if query else ""), sorted(removed)


class ParamFilter(ContentFilter):
    """Redirects to the same URL without tracking-style query parameters."""

    name = "ParamFilter"

    def __init__(self, rules: List[ParamRule]):
        self.rules = list(rules)

    async def apply(self, content: str, context: ProxyContext) -> FilterOutput:
        if not context.original_url:
            return content

        target, removed = strip_params(context.original_url, self.rules)
        if not removed:
            return content

        logger.debug("params_removed", params=removed, url=context.original_url)
        return Redirect(location=target)
