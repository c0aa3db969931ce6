"""
Parser for "bang commands" typed into bridged rooms, e.g. "!nick:set Alice".
"""
import re
from dataclasses import dataclass
from typing import List, Optional

_COMMAND_PATTERN = re.compile(r"!([\w\-=:.@]+)")


@dataclass
class BangCommand:
    bangcommand: Optional[str]
    command: Optional[str]
    subcommands: Optional[List[str]]
    body: Optional[str]
    original: str


def parse_bang_command(text: Optional[str]) -> Optional[BangCommand]:
    """Parse text starting with '!' into command, subcommands and body; None otherwise"""
    if not text or not text.startswith("!"):
        return None

    words = text.split(" ")
    matches = _COMMAND_PATTERN.findall(words[0])
    if not matches:
        return BangCommand(bangcommand=None, command=None, subcommands=None, body=text.strip() or None, original=text)

    subcommands = [m for m in matches[1:] if m != matches[0]] or None
    body = " ".join(words[1:]).strip() or None
    return BangCommand(
        bangcommand="".join(f"!{m}" for m in matches),
        command=matches[0],
        subcommands=subcommands,
        body=body,
        original=text,
    )
