#!/usr/bin/env python3
"""
Message Relay Engine - moves messages between Matrix and one third-party network

Inbound (Matrix -> third party): events the puppet sends in a bridged room are
checked for the deduplication tag, routed by the room's alias and handed to the
adapter.

Outbound (third party -> Matrix): adapter payloads are posted into the mirrored
room, either as the puppet (the user wrote it from another third-party client)
or as the ghost of the remote participant.

Loop prevention relies entirely on the deduplication tag: everything the bridge
writes into Matrix as the puppet is tagged, and every Matrix event is checked
before it is relayed.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, Optional, Set

import aiohttp

from src.core.bang_command import parse_bang_command
from src.core.capabilities import AdapterCapabilities
from src.core.config import PairConfig
from src.core.dedup_tag import DeduplicationTagger
from src.core.locks import KeyedLocks
from src.core.remote_user_store import RemoteUserStore
from src.core.retry import classify_failure, retry_on_transient
from src.core.room_manager import RoomLifecycleManager
from src.core.status_channel import StatusChannel
from src.core.types import (
    ContactListUser,
    MediaMessage,
    OwnEcho,
    RemoteSender,
    RoomData,
    Sender,
    ThirdPartyAttachmentMessage,
    ThirdPartyMessage,
    UserData,
)
from src.matrix.appservice import AppServiceIntents
from src.matrix.intent import MatrixIntent, MatrixRequestError
from src.utils.download import (
    AttachmentError,
    AttachmentTooLargeError,
    DownloadedFile,
    classify_msgtype,
    fetch_bytes,
    guess_content_type,
    is_filename_tagged,
    read_file_bytes,
)

if TYPE_CHECKING:
    from src.adapters.base import ThirdPartyAdapter

logger = logging.getLogger("puppet_bridge.relay")

STATUS_ROOM_REPLY = "Commands are currently ignored here"

RELAYED_EVENT_TYPES = ("m.room.message", "m.sticker")

# Errors after which an attachment is sent as a plain-text link instead
ATTACHMENT_FAILURES = (AttachmentError, MatrixRequestError, aiohttp.ClientError, asyncio.TimeoutError, OSError)


class RoutingError(Exception):
    """A Matrix room could not be mapped back to a third-party room"""
    pass


class UnsupportedEventError(Exception):
    """A Matrix event the bridge does not know how to relay"""
    pass


class MessageRelayEngine:
    """Relays messages for one identity pair"""

    def __init__(
        self,
        config: PairConfig,
        puppet: MatrixIntent,
        appservice: AppServiceIntents,
        remote_users: RemoteUserStore,
        rooms: Optional[RoomLifecycleManager] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.config = config
        self.mapper = config.address_mapper()
        self.tagger = DeduplicationTagger(config.deduplication_tag, config.deduplication_tag_pattern)
        self.puppet = puppet
        self.appservice = appservice
        self.remote_users = remote_users
        self.session = session
        self.rooms = rooms or RoomLifecycleManager(config, puppet, appservice.bot, session=session)
        self.status = StatusChannel(self.rooms, self.tagger)
        self.adapter: Optional["ThirdPartyAdapter"] = None
        self.capabilities = AdapterCapabilities()
        self._ghost_locks = KeyedLocks()
        self._ghost_names: Dict[str, str] = {}
        self._ghost_avatars_checked: Set[str] = set()

    def __repr__(self):
        return f"<MessageRelayEngine {self.config.identity_pair_id}>"

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def set_adapter(self, adapter: "ThirdPartyAdapter") -> None:
        self.adapter = adapter
        self.capabilities = AdapterCapabilities.detect(adapter)
        get_room_data = self.capabilities.get_room_data
        if get_room_data is None:
            self.rooms.set_room_data_provider(None)
        else:
            async def room_data(third_party_room_id: str) -> RoomData:
                return await self._call_adapter(get_room_data, third_party_room_id)
            self.rooms.set_room_data_provider(room_data)

    async def _call_adapter(self, func: Callable[..., Awaitable[Any]], *args) -> Any:
        return await asyncio.wait_for(func(*args), timeout=self.config.adapter_timeout)

    async def _download(self, url: str) -> DownloadedFile:
        return await fetch_bytes(
            url,
            max_size=self.config.max_attachment_size,
            session=self.session,
            timeout=self.rooms.download_timeout
        )

    async def _with_retry(self, func: Callable[[], Awaitable[Any]], description: str) -> Any:
        return await retry_on_transient(
            func,
            description,
            max_retries=self.config.relay_retries,
            base_delay=self.config.relay_retry_delay,
            logger_instance=logger
        )

    async def report_status(self, *parts: Any, fixed_width_output: bool = True,
                            room_alias_localpart: Optional[str] = None) -> bool:
        return await self.status.report_status(
            *parts,
            fixed_width_output=fixed_width_output,
            room_alias_localpart=room_alias_localpart
        )

    # ------------------------------------------------------------------
    # Matrix -> third party
    # ------------------------------------------------------------------

    async def handle_matrix_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type not in RELAYED_EVENT_TYPES:
            logger.debug(f"Ignoring {event_type} event in {event.get('room_id')}")
            return
        if event.get("sender") != self.puppet.user_id:
            logger.debug(f"Ignoring event from {event.get('sender')}, only {self.puppet.user_id} is relayed")
            return

        body = (event.get("content") or {}).get("body")
        if self.tagger.is_tagged(body):
            logger.debug(f"Ignoring tagged event {event.get('event_id')}, it was sent by the bridge")
            return

        try:
            await self._with_retry(
                lambda: self._relay_matrix_event(event),
                f"relaying {event.get('event_id')} from {event.get('room_id')}"
            )
        except Exception as e:
            logger.error(
                f"Failed to relay Matrix event {event.get('event_id')}: {e}",
                exc_info=True,
                extra={"failure_kind": classify_failure(e).value}
            )
            await self.report_status(e, event)

    async def _relay_matrix_event(self, event: Dict[str, Any]) -> None:
        room_id = event.get("room_id")
        third_party_room_id = await self.rooms.recover_third_party_room_id(room_id) if room_id else None
        if third_party_room_id is None:
            raise RoutingError(f"could not determine third party room id for {room_id}")

        if self.mapper.is_status_room_id(third_party_room_id):
            logger.info("Ignoring incoming message to status room")
            await self.report_status(STATUS_ROOM_REPLY, fixed_width_output=False)
            return

        if self.adapter is None:
            raise RoutingError(f"no adapter attached for {self.config.identity_pair_id}")

        content = event.get("content") or {}
        body = content.get("body") or ""
        msgtype = content.get("msgtype")

        if event.get("type") == "m.sticker" or msgtype == "m.image":
            await self._call_adapter(self.adapter.send_image_message, third_party_room_id, self._media_message(content))
        elif msgtype in ("m.text", "m.notice"):
            bang_command_hook = self.capabilities.handle_matrix_user_bang_command
            if bang_command_hook is not None and msgtype == "m.text":
                command = parse_bang_command(body)
                if command is not None:
                    logger.info(f"Passing bang command {command.bangcommand} to the adapter")
                    await self._call_adapter(bang_command_hook, command, event)
                    return
            await self._call_adapter(self.adapter.send_message, third_party_room_id, self.tagger.tag(body))
        elif msgtype == "m.emote":
            send_emote = self._require("send_emote_message", msgtype)
            await self._call_adapter(send_emote, third_party_room_id, self.tagger.tag(body))
        elif msgtype in ("m.file", "m.video", "m.audio"):
            send_file = self._require("send_file_message", msgtype)
            await self._call_adapter(send_file, third_party_room_id, self._media_message(content))
        else:
            raise UnsupportedEventError(f"don't know how to handle msgtype {msgtype}")

        logger.info(f"Relayed {msgtype or event.get('type')} from {room_id} to {third_party_room_id}")

    def _require(self, capability: str, msgtype: str) -> Callable[..., Awaitable[Any]]:
        hook = getattr(self.capabilities, capability)
        if hook is None:
            raise UnsupportedEventError(f"adapter cannot relay {msgtype} messages ({capability} missing)")
        return hook

    def _media_message(self, content: Dict[str, Any]) -> MediaMessage:
        url = content.get("url")
        if not url:
            raise UnsupportedEventError(f"media message without url: {content.get('msgtype')}")
        info = content.get("info") or {}
        body = content.get("body") or ""
        return MediaMessage(
            url=self.puppet.mxc_to_http(url),
            text=self.tagger.tag(body),
            mimetype=info.get("mimetype"),
            size=info.get("size"),
            width=info.get("w"),
            height=info.get("h"),
            filename=content.get("filename") or body or None,
        )

    async def handle_puppet_read_receipt(self, matrix_room_id: str) -> None:
        """The puppet read a bridged room in Matrix; tell the third-party network"""
        send_read_receipt = self.capabilities.send_read_receipt
        if send_read_receipt is None:
            return
        third_party_room_id = self.rooms.lookup(matrix_room_id)
        if third_party_room_id is None or self.mapper.is_status_room_id(third_party_room_id):
            return
        try:
            await self._call_adapter(send_read_receipt, third_party_room_id)
            logger.debug(f"Sent read receipt for {third_party_room_id}")
        except Exception as e:
            logger.warning(f"Failed to send read receipt for {third_party_room_id}: {e}")

    # ------------------------------------------------------------------
    # Third party -> Matrix
    # ------------------------------------------------------------------

    async def handle_third_party_room_message(self, message: ThirdPartyMessage) -> None:
        try:
            await self._with_retry(
                lambda: self._relay_text(message),
                f"relaying message into {message.room_id}"
            )
        except Exception as e:
            logger.error(
                f"Failed to relay third-party message in {message.room_id}: {e}",
                exc_info=True,
                extra={"failure_kind": classify_failure(e).value}
            )
            await self.report_status(e, message)

    async def _relay_text(self, message: ThirdPartyMessage) -> None:
        own_echo = isinstance(message.sender, OwnEcho)
        if own_echo and self.tagger.is_tagged(message.text):
            logger.debug(f"Ignoring tagged own message in {message.room_id}, it came from Matrix")
            return

        room_id = await self.rooms.resolve_room(message.room_id)
        intent = await self._acting_intent(message.sender, room_id)
        tag = self.tagger.auto_tag(message.sender)

        content = {
            # Written by the user from another client, shown as a notice
            "msgtype": "m.notice" if own_echo else "m.text",
            "body": tag(message.text),
        }
        if message.html:
            content["format"] = "org.matrix.custom.html"
            content["formatted_body"] = message.html
        await intent.send_message(room_id, content)
        logger.info(f"Relayed message from {message.room_id} to {room_id} as {intent.user_id}")

    async def handle_third_party_room_image_message(self, message: ThirdPartyAttachmentMessage) -> None:
        try:
            await self._with_retry(
                lambda: self._relay_attachment(message),
                f"relaying attachment into {message.room_id}"
            )
        except Exception as e:
            logger.error(
                f"Failed to relay third-party attachment in {message.room_id}: {e}",
                exc_info=True,
                extra={"failure_kind": classify_failure(e).value}
            )
            await self.report_status(e, message)

    async def _relay_attachment(self, message: ThirdPartyAttachmentMessage) -> None:
        if isinstance(message.sender, OwnEcho):
            if self.tagger.is_tagged(message.text) or is_filename_tagged(message.path):
                logger.debug(f"Ignoring tagged own attachment in {message.room_id}, it came from Matrix")
                return

        room_id = await self.rooms.resolve_room(message.room_id)
        intent = await self._acting_intent(message.sender, room_id)
        tag = self.tagger.auto_tag(message.sender)

        try:
            attachment = await self._load_attachment(message)
            content_uri = await intent.upload(attachment.data, attachment.content_type, attachment.filename)
        except ATTACHMENT_FAILURES as e:
            logger.warning(f"Attachment upload failed, sending it as text instead: {e}")
            await intent.send_message(room_id, {
                "msgtype": "m.text",
                "body": tag(message.url or message.path or message.text),
            })
            return

        info: Dict[str, Any] = {"mimetype": attachment.content_type, "size": attachment.size}
        if message.width:
            info["w"] = message.width
        if message.height:
            info["h"] = message.height
        await intent.send_message(room_id, {
            "msgtype": classify_msgtype(attachment.content_type),
            "body": tag(message.text or attachment.filename or "attachment"),
            "url": content_uri,
            "info": info,
        })
        logger.info(f"Relayed attachment from {message.room_id} to {room_id} as {intent.user_id}")

    async def _load_attachment(self, message: ThirdPartyAttachmentMessage) -> DownloadedFile:
        max_size = self.config.max_attachment_size
        if message.url:
            loaded = await self._download(message.url)
        elif message.path:
            loop = asyncio.get_running_loop()
            loaded = await loop.run_in_executor(None, read_file_bytes, message.path, max_size)
        elif message.data is not None:
            if len(message.data) > max_size:
                raise AttachmentTooLargeError(len(message.data), max_size)
            loaded = DownloadedFile(data=message.data, content_type=guess_content_type(message.text))
        else:
            raise AttachmentError("attachment has no url, path or data")

        if message.mimetype:
            loaded.content_type = message.mimetype
        return loaded

    # ------------------------------------------------------------------
    # Acting identities
    # ------------------------------------------------------------------

    async def _acting_intent(self, sender: Sender, room_id: str) -> MatrixIntent:
        if isinstance(sender, OwnEcho):
            return self.puppet
        return await self._ghost_for(sender, room_id)

    async def _ghost_for(self, sender: RemoteSender, room_id: Optional[str]) -> MatrixIntent:
        """Register and update the ghost of a remote user, and join it to the status room and room_id"""
        ghost_user_id = self.mapper.ghost_user_id(sender.user_id)
        name, avatar_url = sender.name, sender.avatar_url
        if not name and not self.config.allow_null_sender_name:
            record = await self.remote_users.get_or_fetch(sender.user_id, self._user_data_fetcher())
            name = record.display_name or sender.user_id
            avatar_url = avatar_url or record.avatar_url

        async with self._ghost_locks.hold(ghost_user_id):
            ghost = await self.appservice.ghost(ghost_user_id)
            await self._update_ghost_profile(ghost, name, avatar_url)
            # Ghosts live in the status room too, so contact list joins mean something
            status_room_id = await self.rooms.get_status_room_id()
            await self.rooms.ensure_member(ghost, status_room_id)
            if room_id and room_id != status_room_id:
                await self.rooms.ensure_member(ghost, room_id)
        return ghost

    def _user_data_fetcher(self) -> Optional[Callable[[str], Awaitable[Optional[UserData]]]]:
        get_user_data = self.capabilities.get_user_data
        if get_user_data is None:
            return None

        async def fetch(third_party_user_id: str) -> Optional[UserData]:
            return await self._call_adapter(get_user_data, third_party_user_id)
        return fetch

    async def _update_ghost_profile(self, ghost: MatrixIntent, name: Optional[str], avatar_url: Optional[str]) -> None:
        if name and self._ghost_names.get(ghost.user_id) != name:
            try:
                await ghost.set_display_name(name)
                self._ghost_names[ghost.user_id] = name
            except MatrixRequestError as e:
                logger.warning(f"Could not set display name of {ghost.user_id}: {e}")

        if avatar_url and ghost.user_id not in self._ghost_avatars_checked:
            try:
                # An existing avatar is never overwritten, there is no way to tell if it changed
                if not await ghost.get_avatar_url():
                    if avatar_url.startswith("mxc://"):
                        content_uri = avatar_url
                    else:
                        downloaded = await self._download(avatar_url)
                        content_uri = await ghost.upload(downloaded.data, downloaded.content_type, downloaded.filename)
                    await ghost.set_avatar_url(content_uri)
                    logger.info(f"Set avatar of {ghost.user_id}")
                self._ghost_avatars_checked.add(ghost.user_id)
            except ATTACHMENT_FAILURES as e:
                logger.warning(f"Could not set avatar of {ghost.user_id}: {e}")

    async def join_third_party_users_to_status_room(self, users: Iterable[ContactListUser]) -> None:
        """Materialise a contact list as ghosts sitting in the status room"""
        users = list(users)
        logger.info(f"Joining {len(users)} users to the status room")
        for user in users:
            await self._ghost_for(RemoteSender(user_id=user.user_id, name=user.name, avatar_url=user.avatar_url), None)
