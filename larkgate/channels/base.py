"""Base channel interface for outbound replies."""

from abc import ABC, abstractmethod
from typing import Any

from larkgate.bus.events import OutboundMessage


class BaseChannel(ABC):
    """Abstract base class for chat platforms the gateway replies through."""

    name: str = "base"

    def __init__(self, config: Any):
        self.config = config

    @abstractmethod
    async def send(self, msg: OutboundMessage) -> None:
        """Deliver one reply. Raises :class:`larkgate.errors.DeliveryError` on failure."""

    async def close(self) -> None:
        pass
