"""Name-keyed registry of provider adapters."""

from __future__ import annotations

from session_queue.config import ProviderSettings
from session_queue.providers.base import ProviderAdapter
from session_queue.providers.claude import ClaudeProvider
from session_queue.providers.codex import CodexProvider


class UnknownProviderError(KeyError):
    """Requested provider name is not registered."""

    def __init__(self, name: str, *, known: tuple[str, ...]) -> None:
        super().__init__(name)
        self.name = name
        self.known = known

    def __str__(self) -> str:
        known = ", ".join(self.known) or "<none>"
        return f'Provider "{self.name}" not available (registered: {known})'


class ProviderRegistry:
    """Holds provider adapters and resolves them by name."""

    def __init__(self, *, default_name: str | None = None) -> None:
        self._providers: dict[str, ProviderAdapter] = {}
        self._default_name = default_name

    def register(self, provider: ProviderAdapter) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> ProviderAdapter | None:
        return self._providers.get(name)

    def resolve(self, name: str | None) -> ProviderAdapter:
        """Return the named provider or the default one when name is empty."""

        key = name or self.default_name
        provider = self._providers.get(key)
        if provider is None:
            raise UnknownProviderError(key, known=self.names())
        return provider

    @property
    def default_name(self) -> str:
        if self._default_name and self._default_name in self._providers:
            return self._default_name
        if not self._providers:
            raise UnknownProviderError(self._default_name or "", known=())
        return next(iter(self._providers))

    def names(self) -> tuple[str, ...]:
        return tuple(self._providers)

    def list_available(self) -> list[ProviderAdapter]:
        return [provider for provider in self._providers.values() if provider.is_available()]


def default_registry(settings: ProviderSettings) -> ProviderRegistry:
    """Registry with the built-in Claude and Codex adapters."""

    registry = ProviderRegistry(default_name=settings.default_provider)
    registry.register(ClaudeProvider(binary=settings.claude_binary))
    registry.register(CodexProvider(binary=settings.codex_binary))
    return registry
