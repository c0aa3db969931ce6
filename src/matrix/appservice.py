#!/usr/bin/env python3
"""
Application-service identities - the bridge bot and ghost users

Everything in the bridge's exclusive namespaces acts through the
application-service token, masquerading with ?user_id=. Ghosts are registered
with the homeserver the first time they are needed, once per process.
"""
import logging
from typing import Dict, Optional, Set

import aiohttp

from src.core.locks import KeyedLocks
from src.matrix.intent import MatrixIntent

logger = logging.getLogger("puppet_bridge.appservice")


class AppServiceIntents:
    """Hands out intents for the bot and for ghosts, registering ghosts lazily"""

    def __init__(
        self,
        homeserver_url: str,
        as_token: str,
        bot_user_id: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None
    ):
        self.homeserver_url = homeserver_url
        self.as_token = as_token
        self._session = session
        self._timeout = timeout
        self.bot = self._make_intent(bot_user_id)
        self._ghosts: Dict[str, MatrixIntent] = {}
        self._registered: Set[str] = set()
        self._locks = KeyedLocks()

    def _make_intent(self, user_id: str) -> MatrixIntent:
        return MatrixIntent(
            self.homeserver_url,
            self.as_token,
            user_id,
            masquerade=True,
            session=self._session,
            timeout=self._timeout
        )

    async def ghost(self, user_id: str) -> MatrixIntent:
        """Intent for a ghost user, registered with the homeserver if this process has not done so yet"""
        if user_id in self._registered:
            return self._ghosts[user_id]
        async with self._locks.hold(user_id):
            if user_id not in self._registered:
                intent = self._ghosts.get(user_id) or self._make_intent(user_id)
                self._ghosts[user_id] = intent
                created = await intent.register()
                if not created:
                    logger.debug(f"Ghost {user_id} was already registered")
                self._registered.add(user_id)
            return self._ghosts[user_id]
