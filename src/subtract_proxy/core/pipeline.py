from typing import List

import structlog

from ..config import Config
from .chain import ContentFilter, FilterChain
from .errors import ConfigError
from .params import ParamFilter, collect_param_rules
from .remote import create_remote_filter
from .rules import RuleFilter, load_filter_config

logger = structlog.get_logger(__name__)


def build_filters(config: Config) -> List[ContentFilter]:
    """
    Param filter first so a redirect skips the rest, then the rule filter,
    then the remote filter. A broken rule file or remote filter setting only
    disables that filter.
    """
    filters: List[ContentFilter] = []

    if config.filtering.enabled and config.filtering.config_path:
        try:
            filter_config = load_filter_config(config.filtering.config_path)
        except ConfigError as e:
            logger.error(
                "filter_config_invalid",
                path=config.filtering.config_path,
                error=e.message,
            )
        else:
            if filter_config.enabled:
                param_rules = collect_param_rules(filter_config)
                if param_rules:
                    filters.append(ParamFilter(param_rules))
                filters.append(RuleFilter(filter_config))

    try:
        remote = create_remote_filter(config.llm)
    except ConfigError as e:
        logger.error("remote_filter_invalid", error=e.message)
        remote = None
    if remote is not None:
        filters.append(remote)

    return filters


def build_chain(config: Config) -> FilterChain:
    chain = FilterChain()
    for content_filter in build_filters(config):
        chain.add(content_filter)
    return chain
