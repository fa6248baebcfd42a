"""
Tests for message body normalization.
"""

import pytest

from markovbot.utils.text_utils import markdown_to_plain, normalize_message, strip_reply_fallback


@pytest.mark.unit
class TestStripReplyFallback:
    def test_removes_quoted_original(self):
        body = "> <@bob:example.org> what time is it\n> second line\n\nnoon"
        assert strip_reply_fallback(body) == "noon"

    def test_plain_body_is_untouched(self):
        assert strip_reply_fallback("no quote > here") == "no quote > here"


@pytest.mark.unit
class TestMarkdownToPlain:
    @pytest.mark.parametrize("markdown,plain", [
        ("**bold** and *italic*", "bold and italic"),
        ("see [the docs](https://example.org)", "see the docs"),
        ("run `make test`", "run make test"),
        ("# Heading", "Heading"),
        ("- item", "item"),
        ("snake_case_name", "snake_case_name"),
    ])
    def test_formatting_removed(self, markdown, plain):
        assert markdown_to_plain(markdown) == plain


@pytest.mark.unit
class TestNormalizeMessage:
    def test_collapses_whitespace(self):
        assert normalize_message("  hello\n\n  there\tfriend ") == "hello there friend"

    def test_code_block_dropped(self):
        assert normalize_message("look:\n```\nx = 1\n```\ndone") == "look: done"

    def test_blank_stays_blank(self):
        assert normalize_message("   \n ") == ""
