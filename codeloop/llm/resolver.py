"""Provider resolution: (provider, model, credentials) -> cached model handle."""

import hashlib
import os
from dataclasses import dataclass, field
from typing import Callable, Mapping

import httpx

from codeloop.config import ModelConfig, get_config
from codeloop.exceptions import ProviderInitError, ProviderNotSupportedError
from codeloop.llm import LLMProvider
from codeloop.llm.chat_completions import ChatCompletionsProvider
from codeloop.llm.responses import ResponsesProvider
from codeloop.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class ProviderSpec:
    """Static facts about one provider id."""

    env_var: str
    default_base_url: str = ""
    requires_key: bool = True
    auth_header: str = "Authorization"


PROVIDERS: dict[str, ProviderSpec] = {
    "openai": ProviderSpec("OPENAI_API_KEY", "https://api.openai.com/v1"),
    "anthropic": ProviderSpec("ANTHROPIC_API_KEY", "https://api.anthropic.com/v1", auth_header="x-api-key"),
    "google": ProviderSpec("GOOGLE_API_KEY", "https://generativelanguage.googleapis.com/v1beta/openai"),
    "xai": ProviderSpec("XAI_API_KEY", "https://api.x.ai/v1"),
    "mistral": ProviderSpec("MISTRAL_API_KEY", "https://api.mistral.ai/v1"),
    "groq": ProviderSpec("GROQ_API_KEY", "https://api.groq.com/openai/v1"),
    "deepseek": ProviderSpec("DEEPSEEK_API_KEY", "https://api.deepseek.com/v1"),
    "openrouter": ProviderSpec("OPENROUTER_API_KEY", "https://openrouter.ai/api/v1"),
    "together": ProviderSpec("TOGETHER_API_KEY", "https://api.together.xyz/v1"),
    "fireworks": ProviderSpec("FIREWORKS_API_KEY", "https://api.fireworks.ai/inference/v1"),
    "perplexity": ProviderSpec("PERPLEXITY_API_KEY", "https://api.perplexity.ai"),
    "ollama": ProviderSpec("OLLAMA_API_KEY", "http://localhost:11434/v1", requires_key=False),
    "azure": ProviderSpec("AZURE_OPENAI_API_KEY", "", auth_header="api-key"),
    "zai": ProviderSpec("ZAI_API_KEY", "https://api.z.ai/api/paas/v4"),
}

PROVIDER_ALIASES: dict[str, str] = {
    "chatgpt": "openai",
    "claude": "anthropic",
    "gemini": "google",
    "grok": "xai",
}

# Providers without the native Responses protocol. Only openai, xai and azure
# serve /responses; the rest speak /chat/completions (google via its /openai path).
CHAT_COMPLETIONS_ONLY: frozenset[str] = frozenset({
    "anthropic",
    "google",
    "mistral",
    "groq",
    "deepseek",
    "openrouter",
    "together",
    "fireworks",
    "perplexity",
    "ollama",
    "zai",
})

BASE_URL_ENV_SUFFIX = "_BASE_URL"


def normalize_provider_id(provider: str) -> str:
    """Lowercase and de-alias a provider id."""
    key = str(provider or "").strip().lower()
    return PROVIDER_ALIASES.get(key, key)


def credential_fingerprint(api_key: str | None) -> str:
    """Short stable digest of a credential; the raw key is never stored."""
    if not api_key:
        return "none"
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:12]


@dataclass
class ProviderConfig:
    """What the caller asks for; overrides win over every other source."""

    provider: str
    model: str
    api_key: str | None = None
    base_url: str | None = None
    temperature: float = 0.7
    max_tokens: int = 16384
    timeout: float = 120.0

    @classmethod
    def from_model_config(cls, model: ModelConfig) -> "ProviderConfig":
        return cls(
            provider=model.provider,
            model=model.model,
            api_key=model.api_key or None,
            base_url=model.base_url or None,
            temperature=model.temperature,
            max_tokens=model.max_tokens,
            timeout=model.request_timeout,
        )


@dataclass
class ModelHandle:
    """Resolved, reusable reference to provider + model + credential."""

    provider: str
    model: str
    credential_fingerprint: str
    base_url: str
    instance: LLMProvider = field(repr=False)


@dataclass
class ValidationResult:
    valid: bool
    reason: str | None = None


def _config_store_key(provider: str) -> str | None:
    cfg = get_config().model
    if normalize_provider_id(cfg.provider) == provider:
        return cfg.api_key or None
    return None


def _config_store_base_url(provider: str) -> str | None:
    cfg = get_config().model
    if normalize_provider_id(cfg.provider) == provider:
        return cfg.base_url or None
    return None


class ProviderResolver:
    """Resolve provider configs into cached model handles.

    Credential and base URL lookup order is explicit override, then
    environment variable, then the injected config store.
    """

    def __init__(
        self,
        credential_store: Callable[[str], str | None] | None = None,
        base_url_store: Callable[[str], str | None] | None = None,
        environ: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._credential_store = credential_store or _config_store_key
        self._base_url_store = base_url_store or _config_store_base_url
        self._environ = environ if environ is not None else os.environ
        self._transport = transport
        self._handles: dict[tuple[str, str, str, str], ModelHandle] = {}

    def _spec(self, provider: str) -> ProviderSpec:
        spec = PROVIDERS.get(provider)
        if spec is None:
            raise ProviderNotSupportedError(provider)
        return spec

    def resolve_api_key(self, config: ProviderConfig) -> str | None:
        provider = normalize_provider_id(config.provider)
        spec = self._spec(provider)
        if config.api_key:
            return config.api_key
        env_value = self._environ.get(spec.env_var, "").strip()
        if env_value:
            return env_value
        return self._credential_store(provider)

    def resolve_base_url(self, config: ProviderConfig) -> str:
        provider = normalize_provider_id(config.provider)
        spec = self._spec(provider)
        if config.base_url:
            return config.base_url
        env_value = self._environ.get(f"{provider.upper()}{BASE_URL_ENV_SUFFIX}", "").strip()
        if env_value:
            return env_value
        return self._base_url_store(provider) or spec.default_base_url

    def resolve(self, config: ProviderConfig) -> ModelHandle:
        """Return the cached handle for ``config``, building it on first use."""
        provider = normalize_provider_id(config.provider)
        spec = self._spec(provider)
        api_key = self.resolve_api_key(config)
        base_url = self.resolve_base_url(config)
        fingerprint = credential_fingerprint(api_key)
        cache_key = (provider, fingerprint, base_url, config.model)

        handle = self._handles.get(cache_key)
        if handle is not None:
            return handle

        if not base_url:
            raise ProviderInitError(provider, "no base URL configured")

        provider_cls = ChatCompletionsProvider if provider in CHAT_COMPLETIONS_ONLY else ResponsesProvider
        headers: dict[str, str] = {}
        bearer_key = api_key
        if api_key and spec.auth_header != "Authorization":
            headers[spec.auth_header] = api_key
            bearer_key = None
        try:
            instance = provider_cls(
                provider=provider,
                model=config.model,
                base_url=base_url,
                api_key=bearer_key,
                headers=headers,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                timeout=config.timeout,
                transport=self._transport,
            )
        except (TypeError, ValueError) as e:
            raise ProviderInitError(provider, str(e)) from e

        handle = ModelHandle(
            provider=provider,
            model=config.model,
            credential_fingerprint=fingerprint,
            base_url=base_url,
            instance=instance,
        )
        self._handles[cache_key] = handle
        log.debug(
            "Resolved model handle",
            provider=provider,
            model=config.model,
            protocol=provider_cls.__name__,
            fingerprint=fingerprint,
        )
        return handle

    def validate(self, config: ProviderConfig) -> ValidationResult:
        """Check a config before any model call is attempted."""
        provider = normalize_provider_id(config.provider)
        spec = PROVIDERS.get(provider)
        if spec is None:
            return ValidationResult(False, f"Unsupported provider: {config.provider}")
        if spec.requires_key and not self.resolve_api_key(config):
            return ValidationResult(
                False,
                f"Missing API key for {provider}. Set {spec.env_var} environment variable.",
            )
        if not str(config.model or "").strip():
            return ValidationResult(False, f"No model specified for {provider}.")
        return ValidationResult(True)

    def clear(self, provider: str | None = None) -> None:
        """Drop cached handles for one provider, or all of them."""
        if provider is None:
            self._handles.clear()
            return
        target = normalize_provider_id(provider)
        for key in [k for k in self._handles if k[0] == target]:
            del self._handles[key]

    async def aclose(self) -> None:
        """Close every cached provider instance."""
        for handle in list(self._handles.values()):
            await handle.instance.close()
        self._handles.clear()


def create_provider(
    provider: str = "openai",
    model: str = "gpt-4o-mini",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 16384,
) -> LLMProvider:
    """Create an LLM provider without keeping a resolver around.

    Args:
        provider: Provider id or alias (openai, anthropic, ollama, ...)
        model: Model name
        api_key: Optional API key override
        base_url: Optional base URL override
        temperature: Default temperature
        max_tokens: Default max tokens

    Returns:
        Configured LLMProvider instance
    """
    config = ProviderConfig(
        provider=provider,
        model=model,
        api_key=api_key,
        base_url=base_url,
        temperature=temperature,
        max_tokens=max_tokens,
    )
    return ProviderResolver().resolve(config).instance
