#!/usr/bin/env python3
"""
Puppet session - the real Matrix user the bridge acts for

Logs in with matrix-nio (password login is done once, after which the access
token is written back into the config file), then keeps a sync loop running so
the bridge sees the puppet's own read receipts. Messages reach the bridge
through the application-service transactions instead.
"""
import logging
from typing import Awaitable, Callable, Optional

import aiohttp
from nio import AsyncClient, LoginError, MatrixRoom, ReceiptEvent

from src.core.config import PuppetIdentity, associate_token
from src.matrix.intent import MatrixIntent

logger = logging.getLogger("puppet_bridge.puppet")

ReceiptHandler = Callable[[str], Awaitable[None]]

# Skip history on the first sync, the bridge only cares about new receipts
INITIAL_SYNC_FILTER = {
    "room": {
        "timeline": {"limit": 0},
        "state": {"lazy_load_members": True}
    },
    "presence": {"enabled": False},
    "account_data": {"enabled": False}
}

SYNC_FILTER = {
    "room": {
        "timeline": {"limit": 1},
        "state": {"lazy_load_members": True}
    },
    "presence": {"enabled": False},
    "account_data": {"enabled": False}
}


class PuppetLoginError(Exception):
    """Raised when the puppet cannot log in"""
    pass


class PuppetSession:
    def __init__(
        self,
        homeserver_url: str,
        user_id: str,
        identity: PuppetIdentity,
        identity_pair_id: str,
        config_path: Optional[str] = None,
        device_name: str = "PuppetBridge"
    ):
        self.homeserver_url = homeserver_url
        self.user_id = user_id
        self.identity = identity
        self.identity_pair_id = identity_pair_id
        self.config_path = config_path
        self.device_name = device_name
        self.client: Optional[AsyncClient] = None
        self._receipt_handler: Optional[ReceiptHandler] = None

    @property
    def access_token(self) -> Optional[str]:
        return self.client.access_token if self.client else None

    def on_read_receipt(self, handler: ReceiptHandler) -> None:
        self._receipt_handler = handler

    async def start(self) -> AsyncClient:
        """Log in (or reuse the configured token) and register callbacks"""
        self.client = AsyncClient(homeserver=self.homeserver_url, user=self.user_id)

        if self.identity.token:
            self.client.user_id = self.user_id
            self.client.access_token = self.identity.token
            logger.info(f"Using configured access token for {self.user_id}")
        elif self.identity.password:
            response = await self.client.login(password=self.identity.password, device_name=self.device_name)
            if isinstance(response, LoginError):
                await self.client.close()
                raise PuppetLoginError(f"Login failed for {self.user_id}: {response.message}")
            logger.info(f"Login successful. User ID: {self.client.user_id}, Device ID: {self.client.device_id}")
            if self.config_path:
                associate_token(self.config_path, self.identity_pair_id, self.client.access_token)
        else:
            await self.client.close()
            raise PuppetLoginError(f"No token or password configured for {self.user_id}")

        self.client.add_ephemeral_callback(self._on_receipt, ReceiptEvent)
        return self.client

    def intent(self, session: Optional[aiohttp.ClientSession] = None,
               timeout: Optional[aiohttp.ClientTimeout] = None) -> MatrixIntent:
        if not self.access_token:
            raise PuppetLoginError(f"Puppet {self.user_id} is not logged in")
        return MatrixIntent(self.homeserver_url, self.access_token, self.user_id, session=session, timeout=timeout)

    async def _on_receipt(self, room: MatrixRoom, event: ReceiptEvent) -> None:
        if self._receipt_handler is None:
            return
        for receipt in event.receipts:
            if receipt.user_id == self.user_id and receipt.receipt_type == "m.read":
                logger.debug(f"Puppet read {receipt.event_id} in {room.room_id}")
                try:
                    await self._receipt_handler(room.room_id)
                except Exception as e:
                    logger.warning(f"Read receipt handler failed for {room.room_id}: {e}")

    async def run(self) -> None:
        if self.client is None:
            raise PuppetLoginError("start() must be called before run()")
        logger.info(f"Performing initial sync for {self.user_id}")
        await self.client.sync(timeout=30000, full_state=False, sync_filter=INITIAL_SYNC_FILTER)
        logger.info(f"Initial sync complete for {self.user_id}, listening for receipts")
        await self.client.sync_forever(timeout=30000, full_state=False, sync_filter=SYNC_FILTER)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()


async def login_for_token(homeserver_url: str, user_id: str, password: str, device_name: str = "PuppetBridge") -> str:
    """Log in once with a password and return the access token"""
    client = AsyncClient(homeserver=homeserver_url, user=user_id)
    try:
        response = await client.login(password=password, device_name=device_name)
        if isinstance(response, LoginError):
            raise PuppetLoginError(f"Login failed for {user_id}: {response.message}")
        return client.access_token
    finally:
        await client.close()
