"""
Unit tests for src/core/dedup_tag.py
"""
from src.core.dedup_tag import DEFAULT_DEDUPLICATION_TAG, DeduplicationTagger
from src.core.types import OWN_ECHO, RemoteSender


class TestDeduplicationTagger:
    def test_default_tag(self):
        tagger = DeduplicationTagger()
        assert tagger.tag("hello") == "hello \ufeff"
        assert DEFAULT_DEDUPLICATION_TAG == " \ufeff"

    def test_tagged_text_is_detected(self):
        tagger = DeduplicationTagger()
        assert tagger.is_tagged(tagger.tag("hello"))
        assert not tagger.is_tagged("hello")

    def test_tag_only_counts_at_end(self):
        tagger = DeduplicationTagger()
        assert not tagger.is_tagged("hello \ufeff world")

    def test_empty_text(self):
        tagger = DeduplicationTagger()
        assert not tagger.is_tagged(None)
        assert not tagger.is_tagged("")
        assert tagger.is_tagged(tagger.tag(None))

    def test_custom_tag_and_pattern(self):
        tagger = DeduplicationTagger(" [m]", r" \[m\]$")
        assert tagger.tag("hi") == "hi [m]"
        assert tagger.is_tagged("hi [m]")
        assert not tagger.is_tagged("hi \ufeff")

    def test_custom_tag_without_pattern_is_matched_literally(self):
        tagger = DeduplicationTagger("\u200b")
        assert tagger.pattern == "\u200b$"
        assert tagger.is_tagged(tagger.tag("hi"))
        assert not tagger.is_tagged("hi")

    def test_custom_tag_with_regex_characters(self):
        tagger = DeduplicationTagger(" (bridge)")
        assert tagger.is_tagged(tagger.tag("hi"))
        assert not tagger.is_tagged("hi bridge")


class TestAutoTag:
    def test_own_echo_is_tagged(self):
        tagger = DeduplicationTagger()
        assert tagger.auto_tag(OWN_ECHO)("sent elsewhere") == "sent elsewhere \ufeff"

    def test_remote_sender_is_not_tagged(self):
        tagger = DeduplicationTagger()
        assert tagger.auto_tag(RemoteSender("bob"))("hi from bob") == "hi from bob"
        assert tagger.auto_tag(RemoteSender("bob"))(None) == ""
