"""Model providers.

Public API: Provider protocol, ProviderError, AnthropicProvider.
"""

from hive.providers.anthropic import AnthropicProvider
from hive.providers.base import Provider, ProviderError

__all__ = [
    "AnthropicProvider",
    "Provider",
    "ProviderError",
]
