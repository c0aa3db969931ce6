#!/usr/bin/env python3
"""
Matrix Intent - acts on the homeserver as one Matrix identity

A MatrixIntent wraps an access token plus, for application-service users, the
user ID to masquerade as. The puppet, the bridge bot and every ghost user are
all driven through this class so the room lifecycle and relay code never deal
with raw HTTP.
"""
import logging
import time
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

logger = logging.getLogger("puppet_bridge.intent")

# Default timeout for all requests
DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=30)

CLIENT_API = "/_matrix/client/v3"
MEDIA_API = "/_matrix/media/v3"
AUTHENTICATED_MEDIA_API = "/_matrix/client/v1/media"


class MatrixRequestError(Exception):
    """Raised when the homeserver answers with a non-2xx status"""
    def __init__(self, status: int, errcode: Optional[str] = None, error: Optional[str] = None, method: str = "", path: str = ""):
        self.status = status
        self.errcode = errcode
        self.error = error or ""
        self.method = method
        self.path = path
        super().__init__(f"{method} {path} failed: {status} {errcode or ''} {self.error}".strip())


def _q(value: str) -> str:
    return quote(value, safe="")


class MatrixIntent:
    """Client-server API calls made as a single Matrix user"""

    def __init__(
        self,
        homeserver_url: str,
        access_token: str,
        user_id: str,
        masquerade: bool = False,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None
    ):
        """
        Args:
            homeserver_url: Matrix homeserver URL
            access_token: Access token of the user, or the application-service token
            user_id: Full Matrix user ID this intent acts as
            masquerade: Append ?user_id= to every request (application-service users)
            session: Shared aiohttp session; a short-lived one is opened per call otherwise
            timeout: Per-request timeout
        """
        self.homeserver_url = homeserver_url.rstrip("/")
        self.access_token = access_token
        self.user_id = user_id
        self.masquerade = masquerade
        self._session = session
        self._timeout = timeout or DEFAULT_TIMEOUT

    def __repr__(self):
        return f"<MatrixIntent {self.user_id}>"

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        skip_masquerade: bool = False
    ) -> Dict[str, Any]:
        url = f"{self.homeserver_url}{path}"
        query = dict(params or {})
        if self.masquerade and not skip_masquerade:
            query["user_id"] = self.user_id
        request_headers = self.auth_headers()
        if headers:
            request_headers.update(headers)

        kwargs: Dict[str, Any] = {"params": query, "headers": request_headers, "timeout": self._timeout}
        if data is not None:
            kwargs["data"] = data
        elif json_body is not None:
            kwargs["json"] = json_body

        if self._session is not None:
            return await self._send(self._session, method, url, path, kwargs)
        async with aiohttp.ClientSession() as session:
            return await self._send(session, method, url, path, kwargs)

    async def _send(self, session: aiohttp.ClientSession, method: str, url: str, path: str, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        async with session.request(method, url, **kwargs) as response:
            if 200 <= response.status < 300:
                try:
                    return await response.json(content_type=None) or {}
                except ValueError:
                    return {}
            errcode, error = None, None
            try:
                body = await response.json(content_type=None)
                if isinstance(body, dict):
                    errcode = body.get("errcode")
                    error = body.get("error")
            except ValueError:
                error = await response.text()
            logger.debug(f"{method} {path} as {self.user_id} failed: {response.status} {errcode} {error}")
            raise MatrixRequestError(response.status, errcode, error, method=method, path=path)

    # ------------------------------------------------------------------
    # Directory / rooms
    # ------------------------------------------------------------------

    async def resolve_alias(self, alias: str) -> Optional[str]:
        """Return the room ID an alias points at, or None if the alias does not exist"""
        try:
            data = await self._request("GET", f"{CLIENT_API}/directory/room/{_q(alias)}")
        except MatrixRequestError as e:
            if e.status == 404 or e.errcode == "M_NOT_FOUND":
                return None
            raise
        return data.get("room_id")

    async def put_alias(self, alias: str, room_id: str) -> None:
        await self._request("PUT", f"{CLIENT_API}/directory/room/{_q(alias)}", json_body={"room_id": room_id})

    async def delete_alias(self, alias: str) -> None:
        await self._request("DELETE", f"{CLIENT_API}/directory/room/{_q(alias)}")

    async def create_room(
        self,
        alias_localpart: Optional[str] = None,
        name: Optional[str] = None,
        topic: Optional[str] = None,
        invite: Optional[List[str]] = None,
        is_direct: bool = False,
        preset: str = "private_chat"
    ) -> str:
        room_data: Dict[str, Any] = {
            "preset": preset,
            "visibility": "private",
            "invite": list(invite or []),
            "is_direct": is_direct,
        }
        if alias_localpart:
            room_data["room_alias_name"] = alias_localpart
        if name:
            room_data["name"] = name
        if topic:
            room_data["topic"] = topic
        data = await self._request("POST", f"{CLIENT_API}/createRoom", json_body=room_data)
        room_id = data.get("room_id")
        logger.info(f"{self.user_id} created room {room_id} ({alias_localpart})")
        return room_id

    async def join(self, room_id_or_alias: str) -> str:
        data = await self._request("POST", f"{CLIENT_API}/join/{_q(room_id_or_alias)}", json_body={})
        return data.get("room_id", room_id_or_alias)

    async def invite(self, room_id: str, user_id: str) -> None:
        await self._request("POST", f"{CLIENT_API}/rooms/{_q(room_id)}/invite", json_body={"user_id": user_id})

    # ------------------------------------------------------------------
    # Room state
    # ------------------------------------------------------------------

    async def get_state(self, room_id: str, event_type: str, state_key: str = "") -> Optional[Dict[str, Any]]:
        try:
            return await self._request("GET", f"{CLIENT_API}/rooms/{_q(room_id)}/state/{event_type}/{_q(state_key)}")
        except MatrixRequestError as e:
            if e.status == 404:
                return None
            raise

    async def put_state(self, room_id: str, event_type: str, content: Dict[str, Any], state_key: str = "") -> None:
        await self._request("PUT", f"{CLIENT_API}/rooms/{_q(room_id)}/state/{event_type}/{_q(state_key)}", json_body=content)

    async def set_power_level(self, room_id: str, user_id: str, level: int) -> None:
        power_levels = await self.get_state(room_id, "m.room.power_levels") or {}
        users = dict(power_levels.get("users") or {})
        users[user_id] = level
        power_levels["users"] = users
        await self.put_state(room_id, "m.room.power_levels", power_levels)

    async def set_join_rule(self, room_id: str, rule: str) -> None:
        await self.put_state(room_id, "m.room.join_rules", {"join_rule": rule})

    async def get_room_aliases(self, room_id: str) -> List[str]:
        """Canonical alias plus alt aliases published in the room state"""
        content = await self.get_state(room_id, "m.room.canonical_alias") or {}
        aliases = []
        if content.get("alias"):
            aliases.append(content["alias"])
        aliases.extend(a for a in content.get("alt_aliases") or [] if a not in aliases)
        return aliases

    async def set_canonical_alias(self, room_id: str, alias: str) -> None:
        content = await self.get_state(room_id, "m.room.canonical_alias") or {}
        previous = content.get("alias")
        content["alias"] = alias
        if previous and previous != alias:
            alt_aliases = [a for a in content.get("alt_aliases") or [] if a != alias]
            alt_aliases.append(previous)
            content["alt_aliases"] = alt_aliases
        await self.put_state(room_id, "m.room.canonical_alias", content)

    async def set_room_avatar(self, room_id: str, content_uri: str) -> None:
        await self.put_state(room_id, "m.room.avatar", {"url": content_uri})

    # ------------------------------------------------------------------
    # Messages and media
    # ------------------------------------------------------------------

    async def send_message(self, room_id: str, content: Dict[str, Any]) -> Optional[str]:
        return await self.send_event(room_id, "m.room.message", content)

    async def send_event(self, room_id: str, event_type: str, content: Dict[str, Any]) -> Optional[str]:
        txn_id = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"
        data = await self._request(
            "PUT",
            f"{CLIENT_API}/rooms/{_q(room_id)}/send/{event_type}/{txn_id}",
            json_body=content
        )
        return data.get("event_id")

    async def upload(self, data: bytes, content_type: str = "application/octet-stream", filename: Optional[str] = None) -> str:
        """Upload bytes to the media repository, returning the mxc:// URI"""
        params = {"filename": filename} if filename else None
        result = await self._request(
            "POST",
            f"{MEDIA_API}/upload",
            params=params,
            data=data,
            headers={"Content-Type": content_type or "application/octet-stream"}
        )
        content_uri = result.get("content_uri")
        if not content_uri:
            raise MatrixRequestError(200, "M_UNKNOWN", "upload returned no content_uri", method="POST", path=f"{MEDIA_API}/upload")
        logger.debug(f"Uploaded {len(data)} bytes as {self.user_id}: {content_uri}")
        return content_uri

    def mxc_to_http(self, content_uri: Optional[str], authenticated: bool = False) -> Optional[str]:
        """
        Turn an mxc:// URI into a download URL.

        The default is the legacy unauthenticated media endpoint, which adapters can
        fetch without a token. Homeservers that have frozen unauthenticated media
        reject it; with authenticated=True the client v1 endpoint is returned, which
        needs the Authorization header of this intent.
        """
        if not content_uri or not content_uri.startswith("mxc://"):
            return content_uri
        server_and_media = content_uri[len("mxc://"):]
        if authenticated:
            return f"{self.homeserver_url}{AUTHENTICATED_MEDIA_API}/download/{server_and_media}"
        return f"{self.homeserver_url}{MEDIA_API}/download/{server_and_media}"

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    # ------------------------------------------------------------------
    # Profile / registration
    # ------------------------------------------------------------------

    async def get_avatar_url(self, user_id: Optional[str] = None) -> Optional[str]:
        try:
            data = await self._request("GET", f"{CLIENT_API}/profile/{_q(user_id or self.user_id)}/avatar_url")
        except MatrixRequestError as e:
            if e.status == 404:
                return None
            raise
        return data.get("avatar_url")

    async def set_display_name(self, display_name: str) -> None:
        await self._request("PUT", f"{CLIENT_API}/profile/{_q(self.user_id)}/displayname", json_body={"displayname": display_name})

    async def set_avatar_url(self, content_uri: str) -> None:
        await self._request("PUT", f"{CLIENT_API}/profile/{_q(self.user_id)}/avatar_url", json_body={"avatar_url": content_uri})

    async def register(self) -> bool:
        """Register this application-service user; True if created, False if it already existed"""
        localpart = self.user_id.split(":", 1)[0].lstrip("@")
        body = {"type": "m.login.application_service", "username": localpart}
        try:
            await self._request("POST", f"{CLIENT_API}/register", json_body=body, params={"kind": "user"}, skip_masquerade=True)
        except MatrixRequestError as e:
            if e.errcode == "M_USER_IN_USE":
                return False
            raise
        logger.info(f"Registered application service user {self.user_id}")
        return True
