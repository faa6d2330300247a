"""Ports to the outside world: message delivery, documents, routing, dynamic options."""
from channels.base import (
    ChannelError,
    MessageSender,
    DocumentSender,
    DepartmentRouter,
    AgentRouter,
    OptionProvider,
)
from channels.dispatcher import IntentDispatcher, DeliveryReport

__all__ = [
    "ChannelError",
    "MessageSender", "DocumentSender", "DepartmentRouter", "AgentRouter", "OptionProvider",
    "IntentDispatcher", "DeliveryReport",
]
