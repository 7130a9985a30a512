"""LLM provider factory using browser-use native chat models."""

from typing import TYPE_CHECKING

from browser_use import ChatAnthropic, ChatGoogle, ChatGroq, ChatOllama, ChatOpenAI
from browser_use.llm.openrouter.chat import ChatOpenRouter

from .config import NO_KEY_PROVIDERS, STANDARD_ENV_VAR_NAMES
from .exceptions import LLMProviderError

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel


def get_llm(
    provider: str,
    model: str,
    api_key: str | None = None,
    base_url: str | None = None,
) -> "BaseChatModel":
    """Create the chat model used for query generation.

    Supported providers: openai, anthropic, google, groq, openrouter and
    ollama (local, no API key required). An OpenAI-compatible endpoint can be
    used without a key by setting base_url.

    Raises:
        LLMProviderError: If provider is unsupported or API key is missing
    """
    requires_api_key = provider not in NO_KEY_PROVIDERS and not base_url
    if requires_api_key and not api_key:
        standard_var = STANDARD_ENV_VAR_NAMES.get(provider, "API key")
        if isinstance(standard_var, list):
            standard_var = " or ".join(standard_var)
        raise LLMProviderError(f"API key required for provider '{provider}'. Set {standard_var} or LEADFLOW_LLM_API_KEY environment variable.")

    try:
        match provider:
            case "openai":
                return ChatOpenAI(model=model, api_key=api_key, base_url=base_url)

            case "anthropic":
                return ChatAnthropic(model=model, api_key=api_key)

            case "google":
                return ChatGoogle(model=model, api_key=api_key)

            case "groq":
                return ChatGroq(model=model, api_key=api_key)

            case "openrouter":
                return ChatOpenRouter(model=model, api_key=api_key)

            case "ollama":
                return ChatOllama(model=model, base_url=base_url)

            case _:
                raise LLMProviderError(f"Unsupported provider: {provider}")

    except LLMProviderError:
        raise
    except Exception as e:
        raise LLMProviderError(f"Failed to initialize {provider} LLM: {e}") from e
