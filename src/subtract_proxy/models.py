import re
from typing import Dict, List, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


class _ConfigModel(BaseModel):
    """Accepts both the camelCase keys of the JSON files and field names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


MatchType = Literal["regex", "selector", "removeParam"]
RuleAction = Literal["remove", "replace", "removeParam", "modify"]


class FilterRule(_ConfigModel):
    """A single content rule. Frozen: rules are configuration, not state."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    id: str = ""
    name: str
    match_type: MatchType = "regex"
    pattern: str
    action: RuleAction = "remove"
    priority: int = 0
    enabled: bool = True
    replacement: Optional[str] = None
    case_sensitive: Optional[bool] = None

    @model_validator(mode="before")
    @classmethod
    def expand_shorthand(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        action = data.get("action")
        if action == "remove-param":
            data["action"] = action = "removeParam"
        if "selector" in data and "pattern" not in data:
            data["pattern"] = data.pop("selector")
            data.setdefault("matchType", "selector")
        if action == "removeParam":
            data["matchType"] = "removeParam"
        if not data.get("id") and data.get("name"):
            data["id"] = data["name"]
        return data

    @model_validator(mode="after")
    def check_pattern(self):
        if self.match_type != "selector":
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(
                    f"invalid pattern for rule '{self.name}': {e}"
                ) from e
        return self


def _check_regex(value: Optional[str]) -> Optional[str]:
    if value is not None:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid regular expression {value!r}: {e}") from e
    return value


class HeaderPattern(_ConfigModel):
    name: str
    value: str

    value_compiles = field_validator("value")(_check_regex)


class RuleCondition(_ConfigModel):
    url_pattern: Optional[str] = None
    content_type_pattern: Optional[str] = None
    header_pattern: Optional[HeaderPattern] = None

    patterns_compile = field_validator("url_pattern", "content_type_pattern")(
        _check_regex
    )


class RuleSet(_ConfigModel):
    """Named, conditionally gated group of rules."""

    name: str
    enabled: bool = True
    condition: Optional[RuleCondition] = None
    rules: List[FilterRule] = Field(default_factory=list)


class ParamRule(_ConfigModel):
    pattern: str
    enabled: bool = True
    name: Optional[str] = None

    pattern_compiles = field_validator("pattern")(_check_regex)


class FilterConfig(_ConfigModel):
    """Root of the external rule file."""

    enabled: StrictBool
    rule_sets: List[RuleSet]
    param_rules: List[ParamRule] = Field(default_factory=list)


class ProxyContext(BaseModel):
    """Per-request data handed to every filter."""

    original_url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    content_type: str = ""
    status_code: int = 200
    user_agent: Optional[str] = None

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "")


class PolicyBlock(BaseModel):
    user_agent: str
    allow: List[str] = Field(default_factory=list)
    disallow: List[str] = Field(default_factory=list)
    crawl_delay: Optional[float] = None


class RobotsPolicy(BaseModel):
    domain: str
    blocks: List[PolicyBlock] = Field(default_factory=list)
    content: str = ""
    fetched_at: float = 0.0
    expiry: float = 0.0

    def is_valid(self, now: float) -> bool:
        return now < self.expiry

    def block_for(self, user_agent: str) -> Optional[PolicyBlock]:
        wanted = user_agent.lower()
        wildcard = None
        for block in self.blocks:
            if block.user_agent == wanted:
                return block
            if wildcard is None and block.user_agent == "*":
                wildcard = block
        return wildcard
