"""Validators and small helpers shared across the bridge."""

import re
from typing import Any

ROOM_ID_RE = re.compile(r"^!(\w+):(\S+)$")
USER_ID_RE = re.compile(r"^@(\S+):(\S+)$")
INTEGER_RE = re.compile(r"^[0-9]+$")
SCREENNAME_RE = re.compile(r"^[a-zA-Z0-9_]{1,15}$")
HASHTAG_RE = re.compile(r"^[a-zA-Z0-9_]+$")


def is_room_id(room_id: Any) -> bool:
    return isinstance(room_id, str) and ROOM_ID_RE.match(room_id) is not None


def is_user_id(user_id: Any) -> bool:
    return isinstance(user_id, str) and USER_ID_RE.match(user_id) is not None


def is_str_integer(value: Any) -> bool:
    return isinstance(value, str) and INTEGER_RE.match(value) is not None


def is_twitter_screenname(name: Any) -> bool:
    return isinstance(name, str) and SCREENNAME_RE.match(name) is not None


def is_twitter_hashtag(tag: Any) -> bool:
    return isinstance(tag, str) and HASHTAG_RE.match(tag) is not None


def format_string_from_object(template: str, values: dict[str, Any]) -> str:
    """Replace ``%key`` placeholders with values.

    Longer keys are substituted first, so a key that prefixes another
    (``%id`` and ``%id_str``) does not clobber it.

    Example:
        >>> format_string_from_object("%name (@%screen_name)", {"name": "A", "screen_name": "a"})
        'A (@a)'
    """
    for key in sorted(values, key=len, reverse=True):
        template = template.replace(f"%{key}", str(values[key]))
    return template


def expand_urls(text: str, urls: list[dict[str, Any]]) -> str:
    """Replace shortened links with their expanded form.

    Args:
        text: Tweet text
        urls: URL entities with ``indices`` into the original text and an
            ``expanded_url``, in the order they appear

    Returns:
        Text with every shortened link expanded
    """
    offset = 0
    for url in urls:
        start = offset + url["indices"][0]
        end = offset + url["indices"][1]
        expanded = url["expanded_url"]
        text = text[:start] + expanded + text[end:]
        offset += len(expanded) - (end - start)
    return text


def room_powers(users: dict[str, int]) -> dict[str, Any]:
    """Initial power levels state event for a bridged room."""
    return {
        "type": "m.room.power_levels",
        "state_key": "",
        "content": {
            "ban": 50,
            "events": {
                "m.room.name": 100,
                "m.room.power_levels": 100,
                "m.room.topic": 100,
                "m.room.join_rules": 100,
                "m.room.avatar": 100,
                "m.room.aliases": 75,
                "m.room.canonical_alias": 75,
            },
            "events_default": 10,
            "kick": 75,
            "redact": 75,
            "state_default": 0,
            "users": users,
            "users_default": 10,
        },
    }
