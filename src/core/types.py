#!/usr/bin/env python3
"""
Shared type definitions for the core module.

This module contains dataclasses and types used across multiple core modules
to avoid circular import issues.
"""
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class OwnEcho:
    """The third-party network is reporting a message sent by the puppeted user.

    Such a message either originated from another third-party client (must be
    mirrored into Matrix) or was relayed out of Matrix by us (carries the
    deduplication tag and must be dropped).
    """


@dataclass(frozen=True)
class RemoteSender:
    """A third-party participant other than the puppeted user"""
    user_id: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None


Sender = Union[OwnEcho, RemoteSender]

OWN_ECHO = OwnEcho()


def sender_from_payload(
    sender_id: Optional[str],
    sender_name: Optional[str] = None,
    avatar_url: Optional[str] = None
) -> Sender:
    """Build a Sender from the loose adapter convention where a missing sender ID means 'me'"""
    if sender_id is None:
        return OWN_ECHO
    return RemoteSender(user_id=sender_id, name=sender_name, avatar_url=avatar_url)


@dataclass
class ThirdPartyMessage:
    """Text message arriving from a third-party network"""
    room_id: str
    sender: Sender
    text: str
    html: Optional[str] = None


@dataclass
class ThirdPartyAttachmentMessage:
    """Image or file arriving from a third-party network.

    Exactly one of url, path or data should be set, whichever the adapter has.
    """
    room_id: str
    sender: Sender
    text: str = ""
    url: Optional[str] = None
    path: Optional[str] = None
    data: Optional[bytes] = None
    mimetype: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class RoomData:
    name: str
    topic: str = ""
    avatar_url: Optional[str] = None
    is_direct: bool = False


@dataclass
class UserData:
    name: str
    avatar_url: Optional[str] = None


@dataclass
class ContactListUser:
    user_id: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass
class MediaMessage:
    """Matrix media handed to an adapter (m.image, m.sticker, m.file, m.video, m.audio)"""
    url: str
    text: str
    mimetype: Optional[str] = None
    size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    filename: Optional[str] = None


@dataclass
class RemoteUserRecord:
    """Cached profile of a third-party user"""
    third_party_user_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
