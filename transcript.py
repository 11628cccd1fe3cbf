"""
transcript.py
-------------
Cleans up speech transcripts before they are stored as dialog answers.
"""

import re

_AT_TOKEN = re.compile(r"\s+at\s+", re.IGNORECASE)
_DOT_TOKEN = re.compile(r"\s+dot\s+", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")
_TRAILING_PUNCTUATION = re.compile(r"[.,;:!?]+$")


def fix_email_transcript(transcript: str) -> str:
    """Turn 'John At GMAIL Dot Com.' into 'john@gmail.com'."""
    text = transcript.lower()
    text = _AT_TOKEN.sub("@", text)
    text = _DOT_TOKEN.sub(".", text)
    text = _WHITESPACE.sub("", text)
    return _TRAILING_PUNCTUATION.sub("", text)


def clean_transcript(transcript: str) -> str:
    return _TRAILING_PUNCTUATION.sub("", transcript.strip())


def normalize(kind: str, raw_text) -> str:
    """
    Normalizes a raw transcript for the given answer kind.

    Args:
        kind (str): The question being answered (e.g. 'email', 'name').
        raw_text (str): Transcript as returned by the speech provider.

    Returns:
        str: Cleaned answer; empty string when there is no transcript.
    """
    if not raw_text:
        return ""
    if kind == "email":
        return fix_email_transcript(raw_text)
    return clean_transcript(raw_text)
