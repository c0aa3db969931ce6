"""
Core module for the Matrix puppet bridge

Contains:
- AddressMapper: Ghost user IDs and room aliases for third-party IDs
- DeduplicationTagger: Marks bridge-originated text to stop relay loops
- RoomLifecycleManager: Gets, creates and repairs mirrored rooms
- MessageRelayEngine: Relays messages between Matrix and an adapter
- StatusChannel: Reports problems to the per-pair status room
"""

from .address import AddressMapper
from .dedup_tag import DeduplicationTagger
from .room_manager import RoomLifecycleManager, RoomCreationError
from .relay import MessageRelayEngine, RoutingError, UnsupportedEventError
from .status_channel import StatusChannel

__all__ = [
    "AddressMapper",
    "DeduplicationTagger",
    "RoomLifecycleManager",
    "RoomCreationError",
    "MessageRelayEngine",
    "RoutingError",
    "UnsupportedEventError",
    "StatusChannel",
]
