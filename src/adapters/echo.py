"""
Loopback adapter for trying a bridge setup without a real third-party network.

Every message the puppet sends in a bridged room is answered by a ghost called
"Echo" repeating it. New rooms appear when simulate_incoming() names an unknown
third-party room.
"""
import logging
import os
from typing import Optional

from src.adapters.base import ThirdPartyAdapter
from src.core.types import (
    MediaMessage,
    RoomData,
    ThirdPartyAttachmentMessage,
    ThirdPartyMessage,
    UserData,
    sender_from_payload,
)
from src.utils.download import download_to_tempfile

logger = logging.getLogger("puppet_bridge.adapters.echo")

ECHO_USER_ID = "echo"


class EchoAdapter(ThirdPartyAdapter):
    service_name = "Echo"

    async def start_client(self) -> None:
        logger.info("Echo adapter started")

    async def send_message(self, third_party_room_id: str, text: str) -> None:
        text = text.removesuffix(self.engine.tagger.tag_text)
        await self.simulate_incoming(third_party_room_id, f"echo: {text}")

    async def send_image_message(self, third_party_room_id: str, media: MediaMessage) -> None:
        await self.engine.handle_third_party_room_image_message(ThirdPartyAttachmentMessage(
            room_id=third_party_room_id,
            sender=sender_from_payload(ECHO_USER_ID, "Echo"),
            text=media.filename or "image",
            url=media.url,
            mimetype=media.mimetype,
            width=media.width,
            height=media.height,
        ))

    async def send_file_message(self, third_party_room_id: str, media: MediaMessage) -> None:
        # Files come back from disk, the way adapters for file-based networks deliver them
        path = await download_to_tempfile(media.url, max_size=self.engine.config.max_attachment_size, session=self.engine.session)
        try:
            await self.engine.handle_third_party_room_image_message(ThirdPartyAttachmentMessage(
                room_id=third_party_room_id,
                sender=sender_from_payload(ECHO_USER_ID, "Echo"),
                text=media.filename or os.path.basename(path),
                path=path,
                mimetype=media.mimetype,
            ))
        finally:
            os.remove(path)

    async def get_room_data(self, third_party_room_id: str) -> RoomData:
        return RoomData(name=f"Echo {third_party_room_id}", topic="Messages sent here are echoed back")

    async def get_user_data(self, third_party_user_id: str) -> UserData:
        return UserData(name=third_party_user_id.capitalize())

    async def simulate_incoming(self, third_party_room_id: str, text: str, sender_id: Optional[str] = ECHO_USER_ID) -> None:
        """Deliver a message as if the network had sent it; sender_id None means the puppet wrote it elsewhere"""
        await self.engine.handle_third_party_room_message(ThirdPartyMessage(
            room_id=third_party_room_id,
            sender=sender_from_payload(sender_id),
            text=text,
        ))


def create_adapter(engine, pair) -> EchoAdapter:
    return EchoAdapter(engine, pair.third_party)
