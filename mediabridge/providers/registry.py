"""Platform-to-provider registry built once at startup."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator

from ..config import AppConfig
from ..http_client import ApiClient
from ..models import Platform
from ..secrets import secret_value
from ..urls import classify
from . import Provider
from .instagram import InstagramProvider
from .tiktok import TikTokProvider
from .twitter import TwitterProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Maps each platform tag to its provider instance."""

    def __init__(self, providers: Iterable[Provider] = ()) -> None:
        self._providers: dict[Platform, Provider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        if provider.platform in self._providers:
            logger.warning("Replacing provider for %s", provider.platform.value)
        self._providers[provider.platform] = provider

    def get(self, platform: Platform) -> Provider | None:
        return self._providers.get(platform)

    def for_url(self, url: str) -> Provider | None:
        platform = classify(url)
        if platform is None:
            return None
        provider = self._providers.get(platform)
        if provider is not None and not provider.can_handle(url):
            return None
        return provider

    @property
    def platforms(self) -> tuple[Platform, ...]:
        return tuple(self._providers)

    def __iter__(self) -> Iterator[Provider]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)


def build_registry(config: AppConfig, api: ApiClient) -> ProviderRegistry:
    """Instantiate every enabled provider from configuration."""
    registry = ProviderRegistry()
    if config.twitter_enabled:
        registry.register(TwitterProvider(api, config.twitter_apis, config.twitter_fix_base))
    if config.instagram_enabled:
        session_id = secret_value(config.instagram_session_id)
        if session_id and config.instagram_ds_user_id:
            registry.register(
                InstagramProvider.with_session(
                    api,
                    config.instagram_apis,
                    config.instagram_fix_base,
                    session_id=session_id,
                    ds_user_id=config.instagram_ds_user_id,
                    csrf_token=secret_value(config.instagram_csrf_token),
                    user_agent=config.user_agent,
                )
            )
        else:
            registry.register(InstagramProvider(api, config.instagram_apis, config.instagram_fix_base))
    if config.tiktok_enabled:
        registry.register(TikTokProvider(api, config.tiktok_apis, config.tiktok_fix_base))
    logger.info("Providers registered: %s", ", ".join(p.value for p in registry.platforms) or "none")
    return registry
