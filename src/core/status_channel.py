"""
Status/Admin Channel - the per-pair room where the bridge reports problems.

It is the only place a user of a headless bridge sees errors, so reporting
must never raise: a failure here is logged and swallowed.
"""
import dataclasses
import html
import logging
import pprint
import traceback
from typing import Any, Optional

from src.core.dedup_tag import DeduplicationTagger
from src.core.room_manager import RoomLifecycleManager

logger = logging.getLogger("puppet_bridge.status")


def render_status_part(part: Any) -> str:
    if isinstance(part, BaseException):
        lines = [f"{type(part).__name__}: {part}"]
        if part.__traceback__ is not None:
            lines.append("".join(traceback.format_exception(type(part), part, part.__traceback__)).rstrip())
        return "\n".join(lines)
    if dataclasses.is_dataclass(part) and not isinstance(part, type):
        return pprint.pformat(dataclasses.asdict(part), width=100)
    if isinstance(part, (dict, list, tuple, set)):
        return pprint.pformat(part, width=100)
    return str(part)


def render_status(*parts: Any) -> str:
    return " ".join(render_status_part(part) for part in parts)


class StatusChannel:
    def __init__(self, rooms: RoomLifecycleManager, tagger: DeduplicationTagger):
        self.rooms = rooms
        self.tagger = tagger

    async def report_status(
        self,
        *parts: Any,
        fixed_width_output: bool = True,
        room_alias_localpart: Optional[str] = None
    ) -> bool:
        """Send a notice to the status room. Returns False if it could not be delivered."""
        # Tagged so the notice is never relayed back out
        text = self.tagger.tag(render_status(*parts))
        try:
            room_id = await self.rooms.get_status_room_id(room_alias_localpart)
            bot = self.rooms.bot
            await bot.join(room_id)

            content = {"msgtype": "m.notice", "body": text}
            if fixed_width_output:
                content["format"] = "org.matrix.custom.html"
                content["formatted_body"] = f"<pre><code>{html.escape(text)}</code></pre>"
            await bot.send_message(room_id, content)
            return True
        except Exception as e:
            logger.error(f"Could not deliver status message: {e}", extra={"status_message": text})
            return False
