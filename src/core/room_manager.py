#!/usr/bin/env python3
"""
Room Lifecycle Manager - get, create or repair the Matrix room mirroring a third-party room

The room alias is the authoritative mapping. resolve_room() looks it up through
the puppet, creates the room as the bridge bot when it is missing, and then
walks the room through the same checks every time: bot membership, puppet
membership, puppet power level, invite-only join rule and canonical alias.
A mapping that turns out to be broken (bot locked out, or the room is dead
because nobody reachable is left in it) gets its alias deleted and the room is
recreated, at most MAX_REPAIR_ATTEMPTS times per call.

The matrix room -> third-party room side cache is advisory: it is filled here
on every successful resolution and may be dropped at any time, since the
third-party ID can always be recovered from the room aliases.
"""
import logging
from typing import Awaitable, Callable, Dict, Optional

import aiohttp

from src.core.config import PairConfig
from src.core.locks import KeyedLocks
from src.core.retry import is_dead_room_error, is_transient_error
from src.core.types import RoomData
from src.matrix.intent import MatrixIntent, MatrixRequestError
from src.utils.download import fetch_bytes

logger = logging.getLogger("puppet_bridge.room_manager")

MAX_REPAIR_ATTEMPTS = 1
PUPPET_POWER_LEVEL = 100

RoomDataProvider = Callable[[str], Awaitable[RoomData]]


class RoomCreationError(Exception):
    """The Matrix room for a third-party room could not be found or created"""
    def __init__(self, third_party_room_id: str, reason: str):
        self.third_party_room_id = third_party_room_id
        self.reason = reason
        super().__init__(f"Cannot get or create room for {third_party_room_id}: {reason}")


class _BrokenMapping(Exception):
    """The aliased room cannot be used and has to be recreated"""


class RoomLifecycleManager:
    """Owns the room mappings of one identity pair"""

    def __init__(
        self,
        config: PairConfig,
        puppet: MatrixIntent,
        bot: MatrixIntent,
        room_data_provider: Optional[RoomDataProvider] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Args:
            config: Resolved settings of the identity pair
            puppet: Intent of the puppeted Matrix user
            bot: Intent of the application-service bot
            room_data_provider: Adapter hook returning name/topic/avatar of a third-party room
            session: Shared aiohttp session used to download room avatars
        """
        self.config = config
        self.mapper = config.address_mapper()
        self.puppet = puppet
        self.bot = bot
        self._room_data_provider = room_data_provider
        self.session = session
        self.download_timeout = aiohttp.ClientTimeout(total=config.request_timeout)
        self._locks = KeyedLocks()
        self._room_cache: Dict[str, str] = {}

    def set_room_data_provider(self, provider: Optional[RoomDataProvider]) -> None:
        self._room_data_provider = provider

    # ------------------------------------------------------------------
    # Side cache
    # ------------------------------------------------------------------

    def remember(self, matrix_room_id: str, third_party_room_id: str) -> None:
        self._room_cache[matrix_room_id] = third_party_room_id

    def lookup(self, matrix_room_id: str) -> Optional[str]:
        return self._room_cache.get(matrix_room_id)

    def forget(self, matrix_room_id: str) -> None:
        self._room_cache.pop(matrix_room_id, None)

    async def recover_third_party_room_id(self, matrix_room_id: str) -> Optional[str]:
        """Cache first, then the room's aliases. None when the room is not one of ours."""
        cached = self.lookup(matrix_room_id)
        if cached is not None:
            return cached
        try:
            aliases = await self.puppet.get_room_aliases(matrix_room_id)
        except MatrixRequestError as e:
            if is_transient_error(e):
                raise
            logger.warning(f"Could not read aliases of {matrix_room_id}: {e}")
            return None
        third_party_room_id = self.mapper.third_party_room_id_from_aliases(aliases)
        if third_party_room_id is not None:
            self.remember(matrix_room_id, third_party_room_id)
        return third_party_room_id

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_room(self, third_party_room_id: str) -> str:
        """Return the Matrix room ID for a third-party room, creating or repairing it as needed"""
        if self.mapper.is_status_room_id(third_party_room_id):
            return await self.get_status_room_id()
        alias_localpart = self.mapper.room_alias_localpart(third_party_room_id)
        return await self._resolve(
            third_party_room_id,
            alias_localpart,
            lambda: self._third_party_room_data(third_party_room_id)
        )

    async def get_status_room_id(self, alias_localpart: Optional[str] = None) -> str:
        localpart = alias_localpart or self.mapper.status_room_alias_localpart()
        third_party_room_id = (
            self.mapper.third_party_room_id_from_alias(self.mapper.alias_from_localpart(localpart))
            or self.config.status_room_postfix
        )

        async def status_room_data() -> RoomData:
            return RoomData(
                name=f"{self.config.service_name} Protocol",
                topic=f"{self.config.service_name} Protocol Status Messages",
            )

        return await self._resolve(third_party_room_id, localpart, status_room_data)

    async def _third_party_room_data(self, third_party_room_id: str) -> RoomData:
        if self._room_data_provider is None:
            return RoomData(name=third_party_room_id)
        data = await self._room_data_provider(third_party_room_id)
        if data is None:
            return RoomData(name=third_party_room_id)
        return data

    async def _resolve(
        self,
        third_party_room_id: str,
        alias_localpart: str,
        room_data: Callable[[], Awaitable[RoomData]]
    ) -> str:
        alias = self.mapper.alias_from_localpart(alias_localpart)

        # One resolution per alias at a time, so a new room is created once
        async with self._locks.hold(alias_localpart):
            repairs = 0
            while True:
                room_id = await self._lookup_or_create(third_party_room_id, alias, alias_localpart, room_data)
                try:
                    await self._ensure_bot_joined(room_id)
                    await self._ensure_puppet_joined(room_id)
                except _BrokenMapping as e:
                    if repairs >= MAX_REPAIR_ATTEMPTS:
                        raise RoomCreationError(third_party_room_id, f"room {room_id} still unusable after repair: {e}")
                    repairs += 1
                    logger.warning(f"Room {room_id} for {alias} is unusable ({e}); deleting alias and recreating")
                    self.forget(room_id)
                    await self._delete_alias(third_party_room_id, alias)
                    continue

                await self._grant_puppet_power(room_id)
                await self._set_invite_only(room_id)
                await self._restore_canonical_alias(room_id, alias)
                self.remember(room_id, third_party_room_id)
                return room_id

    async def _lookup_or_create(
        self,
        third_party_room_id: str,
        alias: str,
        alias_localpart: str,
        room_data: Callable[[], Awaitable[RoomData]]
    ) -> str:
        logger.debug(f"Looking up {alias}")
        try:
            room_id = await self.puppet.resolve_alias(alias)
        except MatrixRequestError as e:
            if is_transient_error(e):
                raise
            raise RoomCreationError(third_party_room_id, f"alias lookup failed: {e}") from e
        if room_id:
            logger.debug(f"Found room {room_id} via alias {alias}")
            return room_id

        logger.info(f"No room for {alias} yet, creating it")
        try:
            data = await room_data()
        except Exception as e:
            raise RoomCreationError(third_party_room_id, f"room metadata lookup failed: {e}") from e

        try:
            room_id = await self.bot.create_room(
                alias_localpart=alias_localpart,
                name=data.name,
                topic=data.topic,
                invite=[self.puppet.user_id],
                is_direct=data.is_direct,
            )
        except MatrixRequestError as e:
            if is_transient_error(e):
                raise
            raise RoomCreationError(third_party_room_id, f"room creation failed: {e}") from e
        if not room_id:
            raise RoomCreationError(third_party_room_id, "homeserver returned no room ID")

        logger.info(f"Created room {room_id} for {alias} ('{data.name}')")
        if data.avatar_url:
            await self._set_room_avatar(room_id, data.avatar_url)
        return room_id

    async def _ensure_bot_joined(self, room_id: str) -> None:
        try:
            await self.bot.join(room_id)
        except MatrixRequestError as e:
            if is_transient_error(e):
                raise
            raise _BrokenMapping(f"bridge bot cannot join: {e}") from e

    async def _ensure_puppet_joined(self, room_id: str) -> None:
        try:
            await self.ensure_member(self.puppet, room_id)
        except MatrixRequestError as e:
            if is_dead_room_error(e):
                raise _BrokenMapping(f"puppet cannot join: {e}") from e
            logger.warning(f"Ignoring error from puppet join of {room_id}: {e}")

    async def ensure_member(self, intent: MatrixIntent, room_id: str) -> None:
        """Join intent to the room, having the bot invite it first if the room is invite-only"""
        try:
            await intent.join(room_id)
            return
        except MatrixRequestError as e:
            if e.errcode != "M_FORBIDDEN" or intent.user_id == self.bot.user_id:
                raise
            logger.debug(f"{intent.user_id} needs an invite to {room_id}")
        await self.bot.invite(room_id, intent.user_id)
        await intent.join(room_id)

    # ------------------------------------------------------------------
    # Best-effort steps
    # ------------------------------------------------------------------

    async def _set_room_avatar(self, room_id: str, avatar_url: str) -> None:
        try:
            if avatar_url.startswith("mxc://"):
                content_uri = avatar_url
            else:
                downloaded = await fetch_bytes(
                    avatar_url,
                    max_size=self.config.max_attachment_size,
                    session=self.session,
                    timeout=self.download_timeout
                )
                content_uri = await self.bot.upload(downloaded.data, downloaded.content_type, downloaded.filename)
            await self.bot.set_room_avatar(room_id, content_uri)
            logger.info(f"Set avatar of {room_id}")
        except Exception as e:
            logger.warning(f"Ignoring failed attempt to set avatar of {room_id}: {e}")

    async def _grant_puppet_power(self, room_id: str) -> None:
        try:
            await self.bot.set_power_level(room_id, self.puppet.user_id, PUPPET_POWER_LEVEL)
        except Exception as e:
            logger.warning(f"Ignoring failed attempt to give {self.puppet.user_id} admin in {room_id}: {e}")

    async def _set_invite_only(self, room_id: str) -> None:
        try:
            await self.bot.set_join_rule(room_id, "invite")
        except Exception as e:
            logger.warning(f"Ignoring failed attempt to make {room_id} invite-only: {e}")

    async def _restore_canonical_alias(self, room_id: str, alias: str) -> None:
        try:
            aliases = await self.bot.get_room_aliases(room_id)
            if alias in aliases:
                return
            logger.warning(f"Alias {alias} was stripped from {room_id}, restoring it")
            try:
                await self.bot.put_alias(alias, room_id)
            except MatrixRequestError as e:
                # Still pointing at this room in the directory
                logger.debug(f"Alias {alias} already registered: {e}")
            await self.bot.set_canonical_alias(room_id, alias)
        except Exception as e:
            logger.warning(f"Could not verify aliases of {room_id}: {e}")

    async def _delete_alias(self, third_party_room_id: str, alias: str) -> None:
        try:
            await self.bot.delete_alias(alias)
            logger.warning(f"Deleted alias {alias}")
        except MatrixRequestError as e:
            if e.status == 404:
                return
            if is_transient_error(e):
                raise
            raise RoomCreationError(third_party_room_id, f"cannot delete alias {alias}: {e}") from e
