"""
Optional adapter hooks, resolved once when an adapter is wired into an engine.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from src.core.bang_command import BangCommand
from src.core.types import MediaMessage, RoomData, UserData

logger = logging.getLogger("puppet_bridge.adapters")

OPTIONAL_HOOKS = (
    "send_file_message",
    "send_emote_message",
    "send_read_receipt",
    "get_room_data",
    "get_user_data",
    "handle_matrix_user_bang_command",
)


@dataclass(frozen=True)
class AdapterCapabilities:
    """The optional hooks an adapter actually provides"""
    send_file_message: Optional[Callable[[str, MediaMessage], Awaitable[Any]]] = None
    send_emote_message: Optional[Callable[[str, str], Awaitable[Any]]] = None
    send_read_receipt: Optional[Callable[[str], Awaitable[Any]]] = None
    get_room_data: Optional[Callable[[str], Awaitable[RoomData]]] = None
    get_user_data: Optional[Callable[[str], Awaitable[UserData]]] = None
    handle_matrix_user_bang_command: Optional[Callable[[BangCommand, Dict[str, Any]], Awaitable[Any]]] = None

    @classmethod
    def detect(cls, adapter: Any) -> "AdapterCapabilities":
        hooks = {}
        for name in OPTIONAL_HOOKS:
            hook = getattr(adapter, name, None)
            if hook is not None and callable(hook):
                hooks[name] = hook
        capabilities = cls(**hooks)
        logger.info(f"Adapter {type(adapter).__name__} provides: {', '.join(sorted(hooks)) or 'no optional hooks'}")
        return capabilities

    def has(self, name: str) -> bool:
        return getattr(self, name) is not None
