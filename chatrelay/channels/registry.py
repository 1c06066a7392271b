from typing import Callable, Dict, Optional

from chatrelay.channels import textmebot, whatsapp_cloud, whatsapp_web
from chatrelay.channels.base import ChannelSender, UnsupportedChannel
from chatrelay.channels.whatsapp_web import (
    BRIDGE_NEW,
    BridgeDetector,
    LegacyWhatsappWebSender,
    WhatsappWebClient,
    WhatsappWebSender,
    bridge_url_for_chatbot,
)
from chatrelay.models import ChatbotChannel

SenderFactory = Callable[[ChatbotChannel], ChannelSender]


class SenderRegistry:
    """Channel slug -> sender factory."""

    def __init__(self) -> None:
        self._factories: Dict[str, SenderFactory] = {}

    def register(self, slug: str, factory: SenderFactory) -> None:
        if slug in self._factories:
            raise ValueError(f"Sender already registered for channel: {slug}")
        self._factories[slug] = factory

    def slugs(self) -> list[str]:
        return sorted(self._factories)

    def get_sender(self, slug: Optional[str], chatbot_channel: ChatbotChannel) -> ChannelSender:
        factory = self._factories.get(slug or "")
        if factory is None:
            raise UnsupportedChannel(slug)
        return factory(chatbot_channel)


def whatsapp_web_factory(detector: BridgeDetector) -> SenderFactory:
    """Pick the sender matching whichever bridge generation serves the chatbot."""

    def factory(chatbot_channel: ChatbotChannel) -> ChannelSender:
        base_url = bridge_url_for_chatbot(chatbot_channel.chatbot_id)
        client = WhatsappWebClient(base_url)
        if detector.detect(base_url) == BRIDGE_NEW:
            return WhatsappWebSender(client)
        return LegacyWhatsappWebSender(client)

    return factory


def build_default_registry(detector: Optional[BridgeDetector] = None) -> SenderRegistry:
    registry = SenderRegistry()
    registry.register(whatsapp_cloud.SLUG, lambda chatbot_channel: whatsapp_cloud.CloudApiSender())
    registry.register(whatsapp_web.SLUG, whatsapp_web_factory(detector or get_bridge_detector()))
    registry.register(textmebot.SLUG, lambda chatbot_channel: textmebot.TextMeBotSender())
    return registry


_bridge_detector: Optional[BridgeDetector] = None
_sender_registry: Optional[SenderRegistry] = None


def get_bridge_detector() -> BridgeDetector:
    """Get or create the process-wide bridge detector."""
    global _bridge_detector
    if _bridge_detector is None:
        _bridge_detector = BridgeDetector()
    return _bridge_detector


def get_sender_registry() -> SenderRegistry:
    """Get or create the process-wide sender registry."""
    global _sender_registry
    if _sender_registry is None:
        _sender_registry = build_default_registry()
    return _sender_registry
