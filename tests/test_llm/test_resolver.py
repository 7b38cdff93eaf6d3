import httpx
import pytest

import codeloop.config as config_module
from codeloop.config import Config
from codeloop.exceptions import ProviderInitError, ProviderNotSupportedError
from codeloop.llm import InvocationRequest, Message
from codeloop.llm.chat_completions import ChatCompletionsProvider
from codeloop.llm.resolver import (
    ProviderConfig,
    ProviderResolver,
    create_provider,
    credential_fingerprint,
    normalize_provider_id,
)
from codeloop.llm.responses import ResponsesProvider


def _resolver(environ=None, store=None) -> ProviderResolver:
    keys = dict(store or {})
    return ProviderResolver(
        credential_store=keys.get,
        base_url_store=lambda provider: None,
        environ=environ or {},
    )


def test_aliases_normalize_to_canonical_ids():
    assert normalize_provider_id("ChatGPT") == "openai"
    assert normalize_provider_id("claude") == "anthropic"
    assert normalize_provider_id("gemini") == "google"
    assert normalize_provider_id("grok") == "xai"
    assert normalize_provider_id("groq") == "groq"


def test_chat_completions_only_providers_use_chat_completions():
    resolver = _resolver(environ={"GROQ_API_KEY": "gk"})
    handle = resolver.resolve(ProviderConfig(provider="groq", model="llama-3.3-70b"))
    assert isinstance(handle.instance, ChatCompletionsProvider)
    assert handle.base_url == "https://api.groq.com/openai/v1"


@pytest.mark.parametrize(("provider", "env_var"), [("chatgpt", "OPENAI_API_KEY"), ("grok", "XAI_API_KEY")])
def test_openai_family_uses_responses_protocol(provider: str, env_var: str):
    resolver = _resolver(environ={env_var: "k"})
    handle = resolver.resolve(ProviderConfig(provider=provider, model="m"))
    assert isinstance(handle.instance, ResponsesProvider)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("provider", "env_var", "expected_url"),
    [
        ("anthropic", "ANTHROPIC_API_KEY", "https://api.anthropic.com/v1/chat/completions"),
        ("google", "GOOGLE_API_KEY", "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions"),
        ("mistral", "MISTRAL_API_KEY", "https://api.mistral.ai/v1/chat/completions"),
    ],
)
async def test_vendor_apis_are_called_on_chat_completions(provider: str, env_var: str, expected_url: str):
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=b"data: [DONE]\n\n")

    resolver = ProviderResolver(
        credential_store=lambda p: None,
        base_url_store=lambda p: None,
        environ={env_var: "k"},
        transport=httpx.MockTransport(handler),
    )
    handle = resolver.resolve(ProviderConfig(provider=provider, model="m"))

    chunks = [c async for c in handle.instance.complete_streaming(InvocationRequest(messages=[Message(role="user", content="hi")]))]

    assert isinstance(handle.instance, ChatCompletionsProvider)
    assert seen == [expected_url]
    assert chunks[-1].type == "finish"
    await resolver.aclose()


def test_handles_are_cached_per_credential_and_model():
    resolver = _resolver(environ={"OPENAI_API_KEY": "key-a"})
    first = resolver.resolve(ProviderConfig(provider="openai", model="gpt-4o-mini"))
    again = resolver.resolve(ProviderConfig(provider="openai", model="gpt-4o-mini"))
    other_key = resolver.resolve(ProviderConfig(provider="openai", model="gpt-4o-mini", api_key="key-b"))
    other_model = resolver.resolve(ProviderConfig(provider="openai", model="gpt-4.1"))

    assert first is again
    assert other_key is not first
    assert other_model is not first
    assert first.credential_fingerprint == credential_fingerprint("key-a")
    assert "key-a" not in repr(first)


def test_clear_drops_cached_handles():
    resolver = _resolver(environ={"OPENAI_API_KEY": "k"})
    config = ProviderConfig(provider="openai", model="gpt-4o-mini")
    first = resolver.resolve(config)
    resolver.clear("chatgpt")
    assert resolver.resolve(config) is not first


def test_explicit_key_beats_env_beats_store():
    resolver = _resolver(environ={"OPENAI_API_KEY": "env"}, store={"openai": "stored"})
    assert resolver.resolve_api_key(ProviderConfig(provider="openai", model="m", api_key="explicit")) == "explicit"
    assert resolver.resolve_api_key(ProviderConfig(provider="openai", model="m")) == "env"

    stored_only = _resolver(store={"openai": "stored"})
    assert stored_only.resolve_api_key(ProviderConfig(provider="openai", model="m")) == "stored"


def test_base_url_env_override():
    resolver = _resolver(environ={"OLLAMA_BASE_URL": "http://gpu-box:11434/v1"})
    assert resolver.resolve_base_url(ProviderConfig(provider="ollama", model="llama3.2")) == "http://gpu-box:11434/v1"


def test_validate_reports_missing_key_with_env_var_name():
    result = _resolver().validate(ProviderConfig(provider="anthropic", model="claude-sonnet-4"))
    assert result.valid is False
    assert result.reason == "Missing API key for anthropic. Set ANTHROPIC_API_KEY environment variable."


def test_validate_reports_missing_model():
    result = _resolver(environ={"OPENAI_API_KEY": "k"}).validate(ProviderConfig(provider="openai", model=" "))
    assert result.valid is False
    assert result.reason == "No model specified for openai."


def test_validate_accepts_keyless_local_provider():
    assert _resolver().validate(ProviderConfig(provider="ollama", model="llama3.2")).valid is True


def test_unknown_provider_raises():
    with pytest.raises(ProviderNotSupportedError):
        _resolver().resolve(ProviderConfig(provider="nope", model="m"))


def test_provider_without_base_url_raises_init_error():
    resolver = _resolver(environ={"AZURE_OPENAI_API_KEY": "az"})
    with pytest.raises(ProviderInitError):
        resolver.resolve(ProviderConfig(provider="azure", model="gpt-4o"))


def test_non_bearer_auth_header_is_used_for_anthropic():
    resolver = _resolver(environ={"ANTHROPIC_API_KEY": "ak"})
    handle = resolver.resolve(ProviderConfig(provider="anthropic", model="claude-sonnet-4"))
    headers = handle.instance._headers()
    assert headers["x-api-key"] == "ak"
    assert "Authorization" not in headers


def test_create_provider_builds_a_standalone_instance(monkeypatch):
    monkeypatch.setattr(config_module, "_config", Config())
    provider = create_provider("groq", "llama-3.3-70b", api_key="gk", base_url="https://proxy.test/v1")

    assert isinstance(provider, ChatCompletionsProvider)
    assert provider.model == "llama-3.3-70b"
    assert provider.base_url == "https://proxy.test/v1"
    assert provider._headers()["Authorization"] == "Bearer gk"
