import json
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Union

import structlog
from bs4 import BeautifulSoup
from bs4.element import PreformattedString
from pydantic import ValidationError

from ..models import FilterConfig, FilterRule, ProxyContext, RuleSet
from .chain import ContentFilter
from .errors import ConfigError
from .scope import ContentCategory, content_category

logger = structlog.get_logger(__name__)

HTML_PARSER = "html.parser"


@lru_cache(maxsize=1024)
def compile_rule_pattern(pattern: str, case_sensitive: bool = False) -> re.Pattern:
    return re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)


def apply_pattern_rule(text: str, rule: FilterRule) -> str:
    regex = compile_rule_pattern(rule.pattern, bool(rule.case_sensitive))
    if rule.action == "replace":
        if rule.replacement is None:
            return text
        return regex.sub(rule.replacement, text)
    if rule.action == "remove":
        return regex.sub("", text)
    return text


def ordered_rules(rule_set: RuleSet) -> List[FilterRule]:
    """Enabled rules, highest priority first; sorted() keeps ties stable."""
    return sorted(
        (r for r in rule_set.rules if r.enabled),
        key=lambda r: -r.priority,
    )


def order_rule_sets(rule_sets: List[RuleSet]) -> List[RuleSet]:
    # Keyed on the first listed rule's priority; rule sets carry no priority.
    return sorted(
        rule_sets,
        key=lambda rs: -(rs.rules[0].priority if rs.rules else 0),
    )


def rule_set_applies(rule_set: RuleSet, context: ProxyContext) -> bool:
    if not rule_set.enabled:
        return False

    condition = rule_set.condition
    if condition is None:
        return True

    if condition.url_pattern and not re.search(
        condition.url_pattern, context.original_url or ""
    ):
        return False
    if condition.content_type_pattern and not re.search(
        condition.content_type_pattern, context.content_type or ""
    ):
        return False
    if condition.header_pattern:
        value = context.header(condition.header_pattern.name)
        if not re.search(condition.header_pattern.value, value):
            return False
    return True


class RuleFilter(ContentFilter):
    """
    Applies configured rule sets by content category:

    * HTML: selector rules edit the DOM, then pattern rules rewrite text nodes.
    * JSON: pattern rules rewrite every string leaf.
    * Plain text: pattern rules rewrite the raw string.

    Anything else is passed through. Never raises; a failing rule is skipped
    and any other failure returns the original content.
    """

    name = "RuleFilter"

    def __init__(self, config: FilterConfig):
        self.config = config

    @property
    def rule_sets(self) -> List[RuleSet]:
        return self.config.rule_sets

    async def apply(self, content: str, context: ProxyContext) -> str:
        return self.filter_content(content, context)

    def applicable_rule_sets(self, context: ProxyContext) -> List[RuleSet]:
        return [rs for rs in self.config.rule_sets if rule_set_applies(rs, context)]

    def add_rule_set(self, rule_set: RuleSet) -> bool:
        """Adds a rule set, replacing one with the same name. True if replaced."""
        for i, existing in enumerate(self.config.rule_sets):
            if existing.name == rule_set.name:
                self.config.rule_sets[i] = rule_set
                logger.info("rule_set_replaced", rule_set=rule_set.name)
                return True
        self.config.rule_sets.append(rule_set)
        logger.info("rule_set_added", rule_set=rule_set.name)
        return False

    def remove_rule_set(self, name: str) -> bool:
        before = len(self.config.rule_sets)
        self.config.rule_sets = [rs for rs in self.config.rule_sets if rs.name != name]
        removed = len(self.config.rule_sets) < before
        if removed:
            logger.info("rule_set_removed", rule_set=name)
        return removed

    def filter_content(self, content: str, context: ProxyContext) -> str:
        if not self.config.enabled:
            return content

        try:
            rule_sets = self.applicable_rule_sets(context)
            if not rule_sets:
                logger.debug("no_applicable_rule_sets", url=context.original_url)
                return content

            rules = [r for rs in order_rule_sets(rule_sets) for r in ordered_rules(rs)]
            category = content_category(context.content_type)

            if category is ContentCategory.HTML:
                return self._filter_html(content, rules)
            if category is ContentCategory.JSON:
                return self._filter_json(content, rules)
            if category is ContentCategory.TEXT:
                return self._filter_text(content, rules)

            logger.debug("unsupported_content_type", content_type=context.content_type)
            return content
        except Exception as e:
            logger.error(
                "rule_filter_failed",
                url=context.original_url,
                error=str(e),
            )
            return content

    def _filter_html(self, content: str, rules: List[FilterRule]) -> str:
        selector_rules = [r for r in rules if r.match_type == "selector"]
        pattern_rules = [r for r in rules if r.match_type == "regex"]
        if not selector_rules and not pattern_rules:
            return content

        soup = BeautifulSoup(content, HTML_PARSER)
        changed = False
        for rule in selector_rules:
            changed |= self._apply_selector_rule(soup, rule)
        for rule in pattern_rules:
            changed |= self._apply_to_text_nodes(soup, rule)

        return str(soup) if changed else content

    def _apply_selector_rule(self, soup: BeautifulSoup, rule: FilterRule) -> bool:
        try:
            elements = soup.select(rule.pattern)
        except Exception as e:
            logger.warning("selector_rule_failed", rule=rule.id, error=str(e))
            return False

        if not elements:
            return False
        logger.debug("selector_matched", selector=rule.pattern, count=len(elements))

        changed = False
        for element in elements:
            if element.decomposed:
                continue
            if rule.action == "remove":
                element.decompose()
                changed = True
            elif rule.action == "replace" and rule.replacement is not None:
                element.replace_with(BeautifulSoup(rule.replacement, HTML_PARSER))
                changed = True
            # "modify" is reserved
        return changed

    def _apply_to_text_nodes(self, soup: BeautifulSoup, rule: FilterRule) -> bool:
        try:
            root = soup.body or soup
            changed = False
            for node in list(root.find_all(string=True)):
                # comments, doctypes, CDATA
                if isinstance(node, PreformattedString):
                    continue
                text = str(node)
                new_text = apply_pattern_rule(text, rule)
                if new_text != text:
                    node.replace_with(new_text)
                    changed = True
            return changed
        except Exception as e:
            logger.warning("pattern_rule_failed", rule=rule.id, error=str(e))
            return False

    def _filter_json(self, content: str, rules: List[FilterRule]) -> str:
        pattern_rules = [r for r in rules if r.match_type == "regex"]
        if not pattern_rules:
            return content

        try:
            value = json.loads(content)
        except ValueError as e:
            logger.error("json_parse_failed", error=str(e))
            return content

        original = value
        for rule in pattern_rules:
            try:
                value = self._apply_to_json(value, rule)
            except Exception as e:
                logger.warning("pattern_rule_failed", rule=rule.id, error=str(e))

        if value == original:
            return content
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))

    def _apply_to_json(self, value: Any, rule: FilterRule) -> Any:
        if isinstance(value, str):
            return apply_pattern_rule(value, rule)
        if isinstance(value, list):
            return [self._apply_to_json(item, rule) for item in value]
        if isinstance(value, dict):
            return {key: self._apply_to_json(item, rule) for key, item in value.items()}
        return value

    def _filter_text(self, content: str, rules: List[FilterRule]) -> str:
        result = content
        for rule in rules:
            if rule.match_type != "regex":
                continue
            try:
                result = apply_pattern_rule(result, rule)
            except Exception as e:
                logger.warning("pattern_rule_failed", rule=rule.id, error=str(e))
        return result


def load_filter_config(path: Union[str, Path]) -> FilterConfig:
    """
    Reads the external JSON rule file.
    Raises ConfigError for anything unreadable or structurally wrong.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Couldn't read filter config: {e}", {"path": str(path)}) from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Filter config isn't valid JSON: {e}", {"path": str(path)}) from e

    if not isinstance(data, dict) or not isinstance(data.get("enabled"), bool):
        raise ConfigError(
            "Filter config 'enabled' must be a boolean", {"path": str(path)}
        )
    if not isinstance(data.get("ruleSets", data.get("rule_sets")), list):
        raise ConfigError(
            "Filter config 'ruleSets' must be an array", {"path": str(path)}
        )

    try:
        return FilterConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid filter config: {e.error_count()} error(s)",
            {"path": str(path), "errors": e.errors(include_url=False)},
        ) from e
