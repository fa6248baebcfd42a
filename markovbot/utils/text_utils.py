"""
Utility functions for turning Matrix message bodies into plain training text.
"""

import re

# Rich replies carry a quoted fallback of the original message: "> <@user:server> text" lines
# followed by a blank line.
_REPLY_FALLBACK = re.compile(r"\A(?:>[^\n]*\n)+\n?")
_WHITESPACE = re.compile(r"\s+")


def strip_reply_fallback(body: str) -> str:
    """Remove the quoted reply fallback at the start of a message body."""
    return _REPLY_FALLBACK.sub("", body, count=1)


def markdown_to_plain(text: str) -> str:
    """Convert markdown to plain text by removing formatting."""
    # Remove code blocks
    text = re.sub(r"```[\s\S]*?```", " ", text)
    text = re.sub(r"`([^`]+)`", r"\1", text)

    # Remove links but keep text
    text = re.sub(r"\[([^\]]+)\]\([^\)]+\)", r"\1", text)

    # Remove bold/italic
    text = re.sub(r"\*\*([^\*]+)\*\*", r"\1", text)
    text = re.sub(r"\*([^\*]+)\*", r"\1", text)
    text = re.sub(r"__([^_]+)__", r"\1", text)
    text = re.sub(r"(?<!\w)_([^_]+)_(?!\w)", r"\1", text)

    # Remove headers
    text = re.sub(r"^#+\s*", "", text, flags=re.MULTILINE)

    # Remove list markers
    text = re.sub(r"^\s*[-*+]\s+", "", text, flags=re.MULTILINE)

    # Remove block quotes
    text = re.sub(r"^\s*>\s*", "", text, flags=re.MULTILINE)

    return text


def normalize_message(body: str) -> str:
    """Plain, single-line text ready for training and mention detection."""
    text = strip_reply_fallback(body)
    text = markdown_to_plain(text)
    return _WHITESPACE.sub(" ", text).strip()
