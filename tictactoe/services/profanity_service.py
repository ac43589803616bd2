import re

from tictactoe.core.config import get_settings

FILTERED_MESSAGE = "[message removed by profanity filter]"

_PROFANE_WORDS = {
    "asshole",
    "bastard",
    "bitch",
    "cunt",
    "dick",
    "dumbass",
    "fuck",
    "motherfucker",
    "pussy",
    "shit",
    "slut",
    "whore",
}

_LEET_TRANSLATION = str.maketrans(
    {
        "@": "a",
        "$": "s",
        "0": "o",
        "1": "i",
        "3": "e",
        "4": "a",
        "5": "s",
        "7": "t",
        "!": "i",
    }
)

_WORD_PATTERN = re.compile(r"[a-zA-Z0-9@!$]+")
# same character five or more times in a row
_REPEATED_CHARS = re.compile(r"(.)\1{4,}")


def _normalize_token(token: str) -> str:
    translated = token.lower().translate(_LEET_TRANSLATION)
    return re.sub(r"[^a-z]", "", translated)


def contains_profanity(message: str) -> bool:
    return any(_normalize_token(token) in _PROFANE_WORDS for token in _WORD_PATTERN.findall(message))


def looks_like_spam(message: str) -> bool:
    return bool(_REPEATED_CHARS.search(message))


def sanitize_chat_message(message: str, max_length: int | None = None) -> tuple[str, bool]:
    """Trim and cap a chat message; returns (text, filtered)."""
    limit = max_length if max_length is not None else get_settings().chat_max_message_length
    trimmed = message.strip()
    if not trimmed:
        return "", False
    if len(trimmed) > limit:
        trimmed = trimmed[:limit]

    if not contains_profanity(trimmed):
        return trimmed, False
    return FILTERED_MESSAGE, True
