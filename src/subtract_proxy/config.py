import json
import os
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

from pydantic import Field, ValidationError

from .core.errors import ConfigError
from .models import _ConfigModel

CONFIG_ENV_VAR = "SUBTRACT_PROXY_CONFIG"

DEFAULT_SYSTEM_PROMPT = (
    "You are a web content filter. Analyse the following content and "
    "remove or summarise anything unnecessary."
)


class PromptTemplate(_ConfigModel):
    system: str = DEFAULT_SYSTEM_PROMPT
    user: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)


class UserAgentConfig(_ConfigModel):
    enabled: bool = False
    value: Optional[str] = None
    rotate: bool = False
    presets: Optional[List[str]] = None


class LLMConfig(_ConfigModel):
    enabled: bool = False
    type: Literal["ollama", "openrouter"] = "ollama"
    model: str = "gemma"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    # seconds
    timeout: float = 60.0
    prompt: PromptTemplate = Field(default_factory=PromptTemplate)


class LoggingConfig(_ConfigModel):
    level: Literal["error", "warn", "info", "debug"] = "info"
    file: Optional[str] = None


class FilteringConfig(_ConfigModel):
    enabled: bool = False
    config_path: Optional[str] = None


class RobotsConfig(_ConfigModel):
    enforce: bool = False


class Config(_ConfigModel):
    port: int = 8080
    host: str = "127.0.0.1"
    ignore_robots_txt: bool = False
    # milliseconds
    timeout: int = 30000
    development: bool = False
    user_agent: UserAgentConfig = Field(default_factory=UserAgentConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    filtering: FilteringConfig = Field(default_factory=FilteringConfig)
    robots: RobotsConfig = Field(default_factory=RobotsConfig)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0


def load_config(path: Optional[Union[str, Path]] = None) -> Config:
    """
    Loads the proxy configuration from a JSON file.
    Falls back to $SUBTRACT_PROXY_CONFIG, then to defaults when neither is set.
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return Config()

    try:
        raw = Path(path).read_text(encoding="utf-8")
        return Config.model_validate(json.loads(raw))
    except OSError as e:
        raise ConfigError(
            f"Couldn't read config file: {e}", {"path": str(path)}
        ) from e
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"Config file isn't valid JSON: {e}", {"path": str(path)}
        ) from e
    except ValidationError as e:
        raise ConfigError(
            f"Invalid config: {e.error_count()} error(s)",
            {"path": str(path), "errors": e.errors(include_url=False)},
        ) from e
