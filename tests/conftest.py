"""
Pytest configuration and shared fixtures for puppet bridge tests

This module provides fixtures for:
- Pair configuration
- An in-memory fake homeserver with intents for the puppet, bot and ghosts
- Recording adapters
- SQLite databases for the remote user cache
"""
import itertools
import os
import sys
from typing import Any, Dict, List, Optional, Set

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from src.adapters.base import ThirdPartyAdapter
from src.core.config import PairConfig
from src.core.relay import MessageRelayEngine
from src.core.remote_user_store import RemoteUserStore
from src.core.types import MediaMessage, RoomData, UserData
from src.matrix.intent import MatrixRequestError


DOMAIN = "matrix.test"
PUPPET_USER_ID = f"@alice:{DOMAIN}"
BOT_USER_ID = f"@echo_bot:{DOMAIN}"


# ============================================================================
# Fake Homeserver
# ============================================================================

class FakeRoom:
    def __init__(self, room_id: str, creator: str):
        self.room_id = room_id
        self.members: Set[str] = {creator}
        self.invited: Set[str] = set()
        self.state: Dict[str, Dict[str, Any]] = {}
        self.power_levels: Dict[str, int] = {creator: 100}
        # Joins fail with "No known servers" once every server has left
        self.dead = False


class FakeHomeserver:
    """
    Just enough of a homeserver to drive the room lifecycle and relay code.

    Failures are injected per method with fail(); each injected error is raised
    once (or forever with times=None) by the next matching call.
    """

    def __init__(self, domain: str = DOMAIN):
        self.domain = domain
        self.aliases: Dict[str, str] = {}
        self.rooms: Dict[str, FakeRoom] = {}
        self.messages: List[Dict[str, Any]] = []
        self.uploads: List[Dict[str, Any]] = []
        self.created_rooms: List[Dict[str, Any]] = []
        self.deleted_aliases: List[str] = []
        self.registered: Set[str] = set()
        self.display_names: Dict[str, str] = {}
        self.avatars: Dict[str, str] = {}
        self._failures: List[Dict[str, Any]] = []
        self._room_ids = itertools.count(1)
        self._media_ids = itertools.count(1)

    def fail(self, method: str, error: Exception, user_id: Optional[str] = None,
             room_id: Optional[str] = None, times: Optional[int] = 1) -> None:
        self._failures.append({"method": method, "error": error, "user_id": user_id,
                               "room_id": room_id, "times": times})

    def maybe_fail(self, method: str, user_id: str, room_id: Optional[str] = None) -> None:
        for failure in self._failures:
            if failure["method"] != method:
                continue
            if failure["user_id"] is not None and failure["user_id"] != user_id:
                continue
            if failure["room_id"] is not None and failure["room_id"] != room_id:
                continue
            if failure["times"] is not None:
                failure["times"] -= 1
                if failure["times"] <= 0:
                    self._failures.remove(failure)
            raise failure["error"]

    def intent(self, user_id: str) -> "FakeIntent":
        return FakeIntent(self, user_id)

    def room_for_alias(self, alias: str) -> Optional[FakeRoom]:
        room_id = self.aliases.get(alias)
        return self.rooms.get(room_id) if room_id else None

    def messages_in(self, room_id: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m["room_id"] == room_id]


class FakeIntent:
    """Drop-in for MatrixIntent backed by a FakeHomeserver"""

    def __init__(self, hs: FakeHomeserver, user_id: str):
        self.hs = hs
        self.user_id = user_id
        self.homeserver_url = "http://hs.test"

    def __repr__(self):
        return f"<FakeIntent {self.user_id}>"

    def _room(self, room_id: str) -> FakeRoom:
        room = self.hs.rooms.get(room_id)
        if room is None:
            raise MatrixRequestError(404, "M_NOT_FOUND", "Unknown room")
        return room

    async def resolve_alias(self, alias: str) -> Optional[str]:
        self.hs.maybe_fail("resolve_alias", self.user_id)
        return self.hs.aliases.get(alias)

    async def put_alias(self, alias: str, room_id: str) -> None:
        self.hs.maybe_fail("put_alias", self.user_id, room_id)
        if alias in self.hs.aliases:
            raise MatrixRequestError(409, "M_UNKNOWN", "Room alias already taken")
        self.hs.aliases[alias] = room_id

    async def delete_alias(self, alias: str) -> None:
        self.hs.maybe_fail("delete_alias", self.user_id)
        if alias not in self.hs.aliases:
            raise MatrixRequestError(404, "M_NOT_FOUND", "Room alias not found")
        del self.hs.aliases[alias]
        self.hs.deleted_aliases.append(alias)

    async def create_room(self, alias_localpart=None, name=None, topic=None, invite=None,
                          is_direct=False, preset="private_chat") -> str:
        self.hs.maybe_fail("create_room", self.user_id)
        alias = f"#{alias_localpart}:{self.hs.domain}" if alias_localpart else None
        if alias and alias in self.hs.aliases:
            raise MatrixRequestError(400, "M_ROOM_IN_USE", "Room alias already taken")
        room_id = f"!room{next(self.hs._room_ids)}:{self.hs.domain}"
        room = FakeRoom(room_id, self.user_id)
        room.invited.update(invite or [])
        room.state["m.room.name"] = {"name": name}
        room.state["m.room.topic"] = {"topic": topic}
        room.state["m.room.join_rules"] = {"join_rule": "invite"}
        if alias:
            room.state["m.room.canonical_alias"] = {"alias": alias}
            self.hs.aliases[alias] = room_id
        self.hs.rooms[room_id] = room
        self.hs.created_rooms.append({"room_id": room_id, "alias": alias, "name": name,
                                      "topic": topic, "invite": list(invite or []), "is_direct": is_direct})
        return room_id

    async def join(self, room_id: str) -> str:
        self.hs.maybe_fail("join", self.user_id, room_id)
        room = self._room(room_id)
        if room.dead:
            raise MatrixRequestError(404, "M_UNKNOWN", "No known servers")
        if self.user_id not in room.members:
            if room.state.get("m.room.join_rules", {}).get("join_rule") == "invite" \
                    and self.user_id not in room.invited:
                raise MatrixRequestError(403, "M_FORBIDDEN", "You are not invited to this room.")
            room.invited.discard(self.user_id)
            room.members.add(self.user_id)
        return room_id

    async def invite(self, room_id: str, user_id: str) -> None:
        self.hs.maybe_fail("invite", self.user_id, room_id)
        room = self._room(room_id)
        if self.user_id not in room.members:
            raise MatrixRequestError(403, "M_FORBIDDEN", "You are not in this room.")
        room.invited.add(user_id)

    async def set_power_level(self, room_id: str, user_id: str, level: int) -> None:
        self.hs.maybe_fail("set_power_level", self.user_id, room_id)
        self._room(room_id).power_levels[user_id] = level

    async def set_join_rule(self, room_id: str, rule: str) -> None:
        self.hs.maybe_fail("set_join_rule", self.user_id, room_id)
        self._room(room_id).state["m.room.join_rules"] = {"join_rule": rule}

    async def get_room_aliases(self, room_id: str) -> List[str]:
        self.hs.maybe_fail("get_room_aliases", self.user_id, room_id)
        content = self._room(room_id).state.get("m.room.canonical_alias") or {}
        aliases = [content["alias"]] if content.get("alias") else []
        aliases.extend(a for a in content.get("alt_aliases") or [] if a not in aliases)
        return aliases

    async def set_canonical_alias(self, room_id: str, alias: str) -> None:
        self.hs.maybe_fail("set_canonical_alias", self.user_id, room_id)
        self._room(room_id).state["m.room.canonical_alias"] = {"alias": alias}

    async def set_room_avatar(self, room_id: str, content_uri: str) -> None:
        self._room(room_id).state["m.room.avatar"] = {"url": content_uri}

    async def send_message(self, room_id: str, content: Dict[str, Any]) -> str:
        self.hs.maybe_fail("send_message", self.user_id, room_id)
        room = self._room(room_id)
        if self.user_id not in room.members:
            raise MatrixRequestError(403, "M_FORBIDDEN", "User not in room")
        self.hs.messages.append({"room_id": room_id, "sender": self.user_id, "content": content})
        return f"$event{len(self.hs.messages)}"

    async def upload(self, data: bytes, content_type: str = "application/octet-stream",
                     filename: Optional[str] = None) -> str:
        self.hs.maybe_fail("upload", self.user_id)
        content_uri = f"mxc://{self.hs.domain}/media{next(self.hs._media_ids)}"
        self.hs.uploads.append({"uri": content_uri, "data": data, "content_type": content_type,
                                "filename": filename, "user_id": self.user_id})
        return content_uri

    def mxc_to_http(self, content_uri: Optional[str]) -> Optional[str]:
        if not content_uri or not content_uri.startswith("mxc://"):
            return content_uri
        return f"{self.homeserver_url}/_matrix/media/v3/download/{content_uri[len('mxc://'):]}"

    async def get_avatar_url(self, user_id: Optional[str] = None) -> Optional[str]:
        return self.hs.avatars.get(user_id or self.user_id)

    async def set_display_name(self, display_name: str) -> None:
        self.hs.maybe_fail("set_display_name", self.user_id)
        self.hs.display_names[self.user_id] = display_name

    async def set_avatar_url(self, content_uri: str) -> None:
        self.hs.avatars[self.user_id] = content_uri

    async def register(self) -> bool:
        if self.user_id in self.hs.registered:
            return False
        self.hs.registered.add(self.user_id)
        return True


class FakeAppService:
    """Stands in for AppServiceIntents"""

    def __init__(self, hs: FakeHomeserver, bot_user_id: str = BOT_USER_ID):
        self.hs = hs
        self.bot = hs.intent(bot_user_id)
        self._ghosts: Dict[str, FakeIntent] = {}
        self.ghost_calls: List[str] = []

    async def ghost(self, user_id: str) -> FakeIntent:
        self.ghost_calls.append(user_id)
        if user_id not in self._ghosts:
            self._ghosts[user_id] = self.hs.intent(user_id)
            await self._ghosts[user_id].register()
        return self._ghosts[user_id]


# ============================================================================
# Adapter Fixtures
# ============================================================================

class RecordingAdapter(ThirdPartyAdapter):
    """Adapter with only the required methods; records what it was asked to send"""
    service_name = "Echo"

    def __init__(self, engine, config=None):
        super().__init__(engine, config)
        self.started = False
        self.sent_messages: List[tuple] = []
        self.sent_images: List[tuple] = []

    async def start_client(self) -> None:
        self.started = True

    async def send_message(self, third_party_room_id: str, text: str) -> None:
        self.sent_messages.append((third_party_room_id, text))

    async def send_image_message(self, third_party_room_id: str, media: MediaMessage) -> None:
        self.sent_images.append((third_party_room_id, media))


class FullRecordingAdapter(RecordingAdapter):
    """Adapter providing every optional hook"""

    def __init__(self, engine, config=None):
        super().__init__(engine, config)
        self.sent_files: List[tuple] = []
        self.sent_emotes: List[tuple] = []
        self.read_receipts: List[str] = []
        self.bang_commands: List[tuple] = []
        self.room_data_requests: List[str] = []
        self.user_data_requests: List[str] = []

    async def send_file_message(self, third_party_room_id: str, media: MediaMessage) -> None:
        self.sent_files.append((third_party_room_id, media))

    async def send_emote_message(self, third_party_room_id: str, text: str) -> None:
        self.sent_emotes.append((third_party_room_id, text))

    async def send_read_receipt(self, third_party_room_id: str) -> None:
        self.read_receipts.append(third_party_room_id)

    async def get_room_data(self, third_party_room_id: str) -> RoomData:
        self.room_data_requests.append(third_party_room_id)
        return RoomData(name=f"Chat {third_party_room_id}", topic="a third-party chat")

    async def get_user_data(self, third_party_user_id: str) -> UserData:
        self.user_data_requests.append(third_party_user_id)
        return UserData(name=f"User {third_party_user_id}")

    async def handle_matrix_user_bang_command(self, command, event) -> None:
        self.bang_commands.append((command, event))


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def pair_config():
    """Settings of a single identity pair, with retries that do not sleep"""
    return PairConfig(
        identity_pair_id="alice",
        service_name="Echo",
        service_prefix="echo_alice",
        homeserver_domain=DOMAIN,
        homeserver_url="http://hs.test",
        adapter_timeout=5.0,
        relay_retries=2,
        relay_retry_delay=0.0,
    )


@pytest.fixture
def sample_config_data():
    """Config file content in the camelCase shape the bridge reads"""
    return {
        "serviceName": "Echo",
        "servicePrefix": "echo",
        "homeserverDomain": DOMAIN,
        "homeserverUrl": "http://hs.test",
        "port": 9000,
        "identityPairs": [
            {
                "id": "alice",
                "matrixPuppet": {"localpart": "alice", "password": "secret"},
                "thirdParty": {"username": "alice_remote"}
            },
            {
                "id": "bob",
                "matrixPuppet": {"localpart": "bob", "token": "syt_bob"}
            }
        ]
    }


# ============================================================================
# Homeserver Fixtures
# ============================================================================

@pytest.fixture
def homeserver():
    return FakeHomeserver()


@pytest.fixture
def puppet(homeserver):
    return homeserver.intent(PUPPET_USER_ID)


@pytest.fixture
def appservice(homeserver):
    return FakeAppService(homeserver)


@pytest.fixture
def bot(appservice):
    return appservice.bot


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def remote_users():
    return RemoteUserStore("alice")


@pytest.fixture
def engine(pair_config, puppet, appservice, remote_users):
    return MessageRelayEngine(pair_config, puppet, appservice, remote_users)


@pytest.fixture
def adapter(engine):
    adapter = RecordingAdapter(engine)
    engine.set_adapter(adapter)
    return adapter


@pytest.fixture
def full_adapter(engine):
    adapter = FullRecordingAdapter(engine)
    engine.set_adapter(adapter)
    return adapter


# ============================================================================
# SQLite Database Fixtures (for integration tests)
# ============================================================================

@pytest.fixture
def sqlite_url(tmp_path):
    """A fresh file-backed SQLite database per test"""
    from src.models.database import dispose_engines, init_database

    url = f"sqlite:///{tmp_path / 'bridge.db'}"
    init_database(url)
    yield url
    dispose_engines()


@pytest.fixture
def remote_user_db(sqlite_url):
    from src.models.remote_user import RemoteUserDB

    return RemoteUserDB(sqlite_url)


# ============================================================================
# Helper Fixtures
# ============================================================================

@pytest.fixture
def capture_logs(caplog):
    """Fixture to capture and analyze logs"""
    caplog.set_level("DEBUG")
    return caplog
