import httpx

from ..config import ProviderConfig
from ..models import ProviderKind
from .base import BaseProvider
from .chatgpt import ChatGPTProvider
from .glm import GLMProvider
from .kimi import KimiProvider
from .minimax import MiniMaxProvider
from .openai import OpenAIProvider
from .tavily import TavilyProvider

PROVIDERS: dict[ProviderKind, type[BaseProvider]] = {
    ProviderKind.MINIMAX: MiniMaxProvider,
    ProviderKind.GLM: GLMProvider,
    ProviderKind.TAVILY: TavilyProvider,
    ProviderKind.OPENAI: OpenAIProvider,
    ProviderKind.CHATGPT: ChatGPTProvider,
    ProviderKind.KIMI: KimiProvider,
}


def create_provider(
    kind: ProviderKind,
    config: ProviderConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BaseProvider:
    """Instantiate the adapter for a provider kind."""
    try:
        provider_class = PROVIDERS[ProviderKind(kind)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown provider: {kind}") from None
    return provider_class(config, transport=transport)


__all__ = [
    "BaseProvider",
    "ChatGPTProvider",
    "GLMProvider",
    "KimiProvider",
    "MiniMaxProvider",
    "OpenAIProvider",
    "TavilyProvider",
    "PROVIDERS",
    "create_provider",
]
