"""Network transports carrying events between processes."""

import json
from abc import ABC, abstractmethod
from typing import List, Optional

import websockets
from websockets.exceptions import WebSocketException
from pydantic import ValidationError as PydanticValidationError

from docvault.core.exceptions import EventTransportError
from docvault.schemas.events import PubSubEvent
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)


class EventTransport(ABC):
    """A connection that sends and receives ``PubSubEvent`` messages.

    ``send`` and ``receive`` raise ``EventTransportError`` once the
    connection is lost; the event bus owns reconnection.
    """

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def send(self, event: PubSubEvent) -> None:
        ...

    @abstractmethod
    async def receive(self) -> PubSubEvent:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class WebSocketTransport(EventTransport):
    """JSON events over a WebSocket, subscribed to a list of channels on connect."""

    def __init__(self, url: str, channels: Optional[List[str]] = None):
        self.url = url
        self.channels = channels or []
        self.ws_connection = None

    @property
    def connected(self) -> bool:
        return self.ws_connection is not None

    async def connect(self) -> None:
        try:
            self.ws_connection = await websockets.connect(self.url)
            if self.channels:
                await self.ws_connection.send(
                    json.dumps({"action": "subscribe", "channels": self.channels})
                )
        except (OSError, WebSocketException) as e:
            self.ws_connection = None
            raise EventTransportError(f"Could not connect to {self.url}", original_error=e) from e
        LOGGER.info("WebSocket connected", extra={"url": self.url, "channels": self.channels})

    async def send(self, event: PubSubEvent) -> None:
        if self.ws_connection is None:
            raise EventTransportError("Transport is not connected")
        try:
            await self.ws_connection.send(event.model_dump_json())
        except (OSError, WebSocketException) as e:
            self.ws_connection = None
            raise EventTransportError("WebSocket send failed", original_error=e) from e

    async def receive(self) -> PubSubEvent:
        """Wait for the next well-formed event; malformed frames are skipped."""
        while True:
            if self.ws_connection is None:
                raise EventTransportError("Transport is not connected")
            try:
                data = await self.ws_connection.recv()
            except (OSError, WebSocketException) as e:
                self.ws_connection = None
                raise EventTransportError("WebSocket connection lost", original_error=e) from e

            try:
                return PubSubEvent.model_validate_json(data)
            except PydanticValidationError:
                LOGGER.warning("Ignoring malformed event frame", extra={"frame": str(data)[:200]})

    async def close(self) -> None:
        if self.ws_connection is not None:
            connection, self.ws_connection = self.ws_connection, None
            await connection.close()
