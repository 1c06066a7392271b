from chatrelay.channels.base import (
    AdaptedWebhook,
    AdapterError,
    AuthExpired,
    ChannelNotFound,
    ChannelSender,
    InboundEvent,
    MalformedPayload,
    ProviderRejected,
    RecipientInvalid,
    SendError,
    StatusUpdate,
    TransportError,
    UnsupportedChannel,
)

__all__ = [
    "AdaptedWebhook",
    "AdapterError",
    "AuthExpired",
    "ChannelNotFound",
    "ChannelSender",
    "InboundEvent",
    "MalformedPayload",
    "ProviderRejected",
    "RecipientInvalid",
    "SendError",
    "StatusUpdate",
    "TransportError",
    "UnsupportedChannel",
]
