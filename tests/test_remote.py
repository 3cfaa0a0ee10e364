import pytest

from subtract_proxy.config import LLMConfig, PromptTemplate
from subtract_proxy.core.errors import ConfigError, RemoteFilterError
from subtract_proxy.core.prompt import (
    extract_variable_references,
    process_prompt_template,
    replace_variables,
    validate_prompt_template,
)
from subtract_proxy.core.remote import (
    OllamaFilter,
    OpenRouterFilter,
    RemoteFilter,
    create_remote_filter,
)
from subtract_proxy.models import ProxyContext

CTX = ProxyContext(
    original_url="http://example.com/a",
    content_type="text/html",
    user_agent="Bot/1.0",
)


def fake_post(answer=None, error=None):
    calls = []

    async def post_json(url, payload, headers=None):
        calls.append({"url": url, "payload": payload, "headers": headers})
        if error is not None:
            raise error
        return answer

    return post_json, calls


def test_replace_variables():
    text = "{{ content }} from {{url}} keeps {{unknown}}"
    assert replace_variables(text, {"content": "C", "url": "U"}) == "C from U keeps {{unknown}}"


def test_extract_variable_references():
    assert extract_variable_references("{{a}} and {{ b }}") == ["a", "b"]


def test_process_prompt_template_precedence():
    template = PromptTemplate(
        system="{{content}}|{{lang}}|{{url}}",
        user="{{timestamp}}",
        variables={"lang": "ja", "content": "overridden"},
    )
    processed = process_prompt_template(template, "body", {"url": "http://x/", "lang": "en"})

    assert processed.system == "overridden|en|http://x/"
    assert processed.user.endswith("+00:00")


def test_validate_prompt_template():
    assert validate_prompt_template(PromptTemplate(system="Filter {{content}} of {{url}}"))
    assert validate_prompt_template(
        PromptTemplate(system="{{tone}}", variables={"tone": "terse"})
    )
    assert not validate_prompt_template(PromptTemplate(system="{{nope}}"))
    assert not validate_prompt_template(PromptTemplate(system="  "))


@pytest.mark.asyncio
async def test_ollama_filter_returns_model_answer():
    config = LLMConfig(
        enabled=True,
        model="gemma",
        prompt=PromptTemplate(system="Clean {{url}}", user="{{content}}!"),
    )
    ollama = OllamaFilter(config)
    ollama.post_json, calls = fake_post({"message": {"content": "filtered"}})

    assert await ollama.apply("raw", CTX) == "filtered"
    assert calls[0]["url"] == "http://localhost:11434/api/chat"
    assert calls[0]["payload"]["stream"] is False
    assert calls[0]["payload"]["messages"] == [
        {"role": "system", "content": "Clean http://example.com/a"},
        {"role": "user", "content": "raw!"},
    ]


@pytest.mark.asyncio
async def test_ollama_failure_returns_original():
    ollama = OllamaFilter(LLMConfig(enabled=True))
    ollama.post_json, _ = fake_post(error=RemoteFilterError("HTTP 500"))
    assert await ollama.apply("raw", CTX) == "raw"


@pytest.mark.asyncio
async def test_ollama_bad_shape_returns_original():
    ollama = OllamaFilter(LLMConfig(enabled=True))
    ollama.post_json, _ = fake_post({"unexpected": True})
    assert await ollama.apply("raw", CTX) == "raw"


@pytest.mark.asyncio
async def test_empty_content_is_not_sent():
    ollama = OllamaFilter(LLMConfig(enabled=True))
    ollama.post_json, calls = fake_post({"message": {"content": "x"}})
    assert await ollama.apply("", CTX) == ""
    assert calls == []


@pytest.mark.asyncio
async def test_openrouter_filter():
    config = LLMConfig(
        enabled=True,
        type="openrouter",
        model="some/model",
        api_key="sk-test",
        base_url="https://router.example/v1/",
    )
    router = OpenRouterFilter(config)
    router.post_json, calls = fake_post({"choices": [{"message": {"content": "short"}}]})

    assert await router.apply("long text", CTX) == "short"
    assert calls[0]["url"] == "https://router.example/v1/chat/completions"
    assert calls[0]["headers"]["Authorization"] == "Bearer sk-test"
    assert calls[0]["payload"]["max_tokens"] == 1000


@pytest.mark.asyncio
async def test_openrouter_without_choices_keeps_content():
    router = OpenRouterFilter(LLMConfig(enabled=True, type="openrouter", api_key="k"))
    router.post_json, _ = fake_post({"choices": []})
    assert await router.apply("text", CTX) == "text"


def test_openrouter_requires_api_key():
    with pytest.raises(ConfigError):
        OpenRouterFilter(LLMConfig(enabled=True, type="openrouter"))


def test_create_remote_filter():
    assert create_remote_filter(LLMConfig(enabled=False)) is None
    assert isinstance(create_remote_filter(LLMConfig(enabled=True)), OllamaFilter)
    assert isinstance(
        create_remote_filter(LLMConfig(enabled=True, type="openrouter", api_key="k")),
        OpenRouterFilter,
    )


def test_remote_filter_is_abstract():
    with pytest.raises(TypeError):
        RemoteFilter(LLMConfig(enabled=True))
