#!/usr/bin/env python3
"""
Third-party adapter contract.

An adapter implements one foreign network's send/receive primitives for one
identity pair. It sends through the methods below and reports incoming traffic
by calling the relay engine's handle_third_party_room_message /
handle_third_party_room_image_message.

Only start_client, send_message and send_image_message are required. The other
hooks are optional: an adapter simply does not define them, and the engine
inspects what is there once when the adapter is wired in (AdapterCapabilities).
"""
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Optional

from src.core.capabilities import OPTIONAL_HOOKS, AdapterCapabilities
from src.core.types import MediaMessage

if TYPE_CHECKING:
    from src.core.relay import MessageRelayEngine

__all__ = ["ThirdPartyAdapter", "AdapterCapabilities", "OPTIONAL_HOOKS"]


class ThirdPartyAdapter(ABC):
    """
    Base class for adapters.

    Optional hooks, with their signatures:
        async send_file_message(third_party_room_id, media: MediaMessage)
        async send_emote_message(third_party_room_id, text)
        async send_read_receipt(third_party_room_id)
        async get_room_data(third_party_room_id) -> RoomData
        async get_user_data(third_party_user_id) -> UserData
        async handle_matrix_user_bang_command(command: BangCommand, event: dict)
    """

    #: Network name shown in logs and in the status room
    service_name: str = "third party"

    def __init__(self, engine: "MessageRelayEngine", config: Optional[Dict[str, Any]] = None):
        self.engine = engine
        self.config = dict(config or {})

    @abstractmethod
    async def start_client(self) -> None:
        """Connect to the third-party network and start delivering events to the engine"""

    @abstractmethod
    async def send_message(self, third_party_room_id: str, text: str) -> None:
        """Send a text message to a third-party room"""

    @abstractmethod
    async def send_image_message(self, third_party_room_id: str, media: MediaMessage) -> None:
        """Send an image (or sticker) to a third-party room"""

    async def stop_client(self) -> None:
        pass
