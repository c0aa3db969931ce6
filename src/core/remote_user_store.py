"""
Remote Identity Cache - display names and avatars of third-party users.

Lookups go memory cache -> database -> adapter. A profile is fetched from the
adapter at most once per process unless refresh() is called; whatever the
adapter returns is persisted so later runs can skip the fetch entirely.
"""
import logging
from typing import Awaitable, Callable, Dict, Optional

from src.core.locks import KeyedLocks
from src.core.types import RemoteUserRecord, UserData
from src.models.remote_user import RemoteUserDB

logger = logging.getLogger("puppet_bridge.remote_users")

UserDataFetcher = Callable[[str], Awaitable[Optional[UserData]]]


class RemoteUserStore:
    def __init__(self, identity_pair_id: str, db: Optional[RemoteUserDB] = None):
        self.identity_pair_id = identity_pair_id
        self._db = db
        self._cache: Dict[str, RemoteUserRecord] = {}
        self._locks = KeyedLocks()

    def get(self, third_party_user_id: str) -> Optional[RemoteUserRecord]:
        if third_party_user_id in self._cache:
            return self._cache[third_party_user_id]
        if self._db is None:
            return None
        row = self._db.get(self.identity_pair_id, third_party_user_id)
        if row is None:
            return None
        record = RemoteUserRecord(
            third_party_user_id=row.third_party_user_id,
            display_name=row.display_name,
            avatar_url=row.avatar_url,
        )
        self._cache[third_party_user_id] = record
        return record

    def save(self, record: RemoteUserRecord) -> RemoteUserRecord:
        self._cache[record.third_party_user_id] = record
        if self._db is not None:
            self._db.upsert(
                self.identity_pair_id,
                record.third_party_user_id,
                display_name=record.display_name,
                avatar_url=record.avatar_url,
            )
        return record

    async def get_or_fetch(self, third_party_user_id: str, fetcher: Optional[UserDataFetcher]) -> RemoteUserRecord:
        """Return the stored profile, asking the adapter only when none is known yet"""
        existing = self.get(third_party_user_id)
        if existing is not None:
            return existing
        async with self._locks.hold(third_party_user_id):
            # Another caller may have fetched while we waited
            existing = self.get(third_party_user_id)
            if existing is not None:
                return existing
            return await self._fetch(third_party_user_id, fetcher)

    async def refresh(self, third_party_user_id: str, fetcher: Optional[UserDataFetcher]) -> RemoteUserRecord:
        async with self._locks.hold(third_party_user_id):
            self._cache.pop(third_party_user_id, None)
            return await self._fetch(third_party_user_id, fetcher)

    async def _fetch(self, third_party_user_id: str, fetcher: Optional[UserDataFetcher]) -> RemoteUserRecord:
        if fetcher is None:
            logger.warning(f"Adapter cannot look up user {third_party_user_id}; using the ID as display name")
            return self.save(RemoteUserRecord(third_party_user_id, display_name=third_party_user_id))

        data = await fetcher(third_party_user_id)
        logger.info(f"Fetched profile for third-party user {third_party_user_id}")
        record = RemoteUserRecord(
            third_party_user_id=third_party_user_id,
            display_name=data.name if data else None,
            avatar_url=data.avatar_url if data else None,
        )
        return self.save(record)
