"""
Base transport class - the bridge talks to a messaging client only through this.

A transport must:
1. Pull every pending event as a list of IncomingEvent (at-least-once is fine)
2. Send text to a Recipient, optionally quoting an earlier message

Group vs individual addressing is the transport's problem; the bridge only
passes a Recipient with is_group set.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ..events import IncomingEvent, Recipient


class BaseTransport(ABC):
    """Base class for messaging transports."""

    name: str = "base"  # Override in subclass

    def __init__(self, config: dict):
        """
        Args:
            config: The full settings dict
        """
        self.config = config

    @abstractmethod
    async def receive_events(self) -> list[IncomingEvent]:
        """
        Fetch newly arrived events, in arrival order.

        Raises:
            TransportPullFailure: the batch could not be fetched
        """

    @abstractmethod
    async def send_message(
        self,
        recipient: Recipient,
        text: str,
        quote_timestamp: Optional[int] = None,
        quote_author: Optional[str] = None
    ):
        """
        Deliver `text` to `recipient`.

        Raises:
            TransportPushFailure: the message was not sent
        """

    def __repr__(self):
        return f"<{self.__class__.__name__}>"
