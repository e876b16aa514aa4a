"""Channel adapter registry for the closed set of inbound channels."""

from __future__ import annotations

from ..config import Settings
from .base import ChannelAdapter
from .facebook import FacebookAdapter
from .instagram import InstagramAdapter
from .website_form import WebsiteFormAdapter
from .whatsapp import WhatsAppAdapter

_REGISTRY: dict[str, type[ChannelAdapter]] = {}


def register_adapter(adapter: type[ChannelAdapter]) -> None:
    """Register a channel adapter class under its route name."""
    _REGISTRY[adapter.channel.value] = adapter


def get_adapter(name: str) -> type[ChannelAdapter]:
    """Retrieve an adapter class for ``name`` or raise ``KeyError``."""
    normalized = name.lower()
    if normalized not in _REGISTRY:
        raise KeyError(f"Channel '{name}' is not configured")
    return _REGISTRY[normalized]


def build_adapter(name: str, settings: Settings) -> ChannelAdapter:
    """Instantiate the adapter for ``name`` with its channel credentials."""
    adapter_cls = get_adapter(name)
    return adapter_cls(
        settings.channel(adapter_cls.channel.value),
        verify_signatures=settings.verify_signatures,
    )


def registered_channels() -> list[str]:
    return sorted(_REGISTRY)


register_adapter(FacebookAdapter)
register_adapter(InstagramAdapter)
register_adapter(WhatsAppAdapter)
register_adapter(WebsiteFormAdapter)

__all__ = [
    "ChannelAdapter",
    "FacebookAdapter",
    "InstagramAdapter",
    "WebsiteFormAdapter",
    "WhatsAppAdapter",
    "build_adapter",
    "get_adapter",
    "register_adapter",
    "registered_channels",
]
