"""
Deduplication tag for bridge-originated text.

Every message the bridge writes into Matrix on behalf of the puppet carries an
invisible suffix. When that message comes back through the Matrix event stream,
or a third-party network echoes it back, the suffix tells us not to relay it again.
"""
import re
from typing import Callable, Optional

from src.core.types import OwnEcho, Sender

DEFAULT_DEDUPLICATION_TAG = " \ufeff"
DEFAULT_DEDUPLICATION_TAG_PATTERN = " \\ufeff$"


def pattern_for_tag(tag: Optional[str], pattern: Optional[str] = None) -> str:
    """Detection pattern for a tag; a custom tag without its own pattern is matched literally"""
    if pattern:
        return pattern
    if tag and tag != DEFAULT_DEDUPLICATION_TAG:
        return re.escape(tag) + "$"
    return DEFAULT_DEDUPLICATION_TAG_PATTERN


class DeduplicationTagger:
    def __init__(self, tag: Optional[str] = None, pattern: Optional[str] = None):
        self.tag_text = tag or DEFAULT_DEDUPLICATION_TAG
        self.pattern = pattern_for_tag(self.tag_text, pattern)
        self._regex = re.compile(self.pattern)

    def tag(self, text: Optional[str]) -> str:
        return (text or "") + self.tag_text

    def is_tagged(self, text: Optional[str]) -> bool:
        if not text:
            return False
        return self._regex.search(text) is not None

    def auto_tag(self, sender: Sender) -> Callable[[Optional[str]], str]:
        """Return a tagger that only marks text relayed on behalf of the puppet"""
        if isinstance(sender, OwnEcho):
            return self.tag
        return lambda text: text or ""
