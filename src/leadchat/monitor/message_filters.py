from __future__ import annotations

import re
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .models import OURS, THEIRS, Message


# A filter returns True when the text should be dropped from the transcript.
MessageFilter = Callable[[str, str], bool]

_CLOCK = r"\d{1,2}:\d{2}(\s*(am|pm))?"
_DAY = r"(yesterday|today|monday|tuesday|wednesday|thursday|friday|saturday|sunday|mon|tue|wed|thu|fri|sat|sun)"
_MONTH = r"(january|february|march|april|may|june|july|august|september|october|november|december|jan|feb|mar|apr|jun|jul|aug|sep|sept|oct|nov|dec)"
TIMESTAMP_PATTERNS = (
    re.compile(rf"^{_CLOCK}$", re.IGNORECASE),
    re.compile(rf"^{_DAY}(,?\s*(at\s*)?{_CLOCK})?$", re.IGNORECASE),
    re.compile(rf"^{_MONTH}\.? \d{{1,2}}(,? \d{{4}})?(,?\s*(at\s*)?{_CLOCK})?$", re.IGNORECASE),
)

SYSTEM_MESSAGE_PREFIXES = (
    "you sent",
    "you unsent",
    "you replied to",
    "you reacted",
)

SYSTEM_MESSAGE_MARKERS = (
    "messages and calls are secured",
    "end-to-end encrypt",
    "unsent a message",
    "removed a message",
    "reacted to your message",
    "liked a message",
    "loved a message",
    "missed call",
    "missed video call",
    "voice call ended",
    "video call ended",
    "message request",
    "sent an attachment",
    "sent a photo",
    "sent a sticker",
)

# Bare UI chrome rendered inside the message pane.
UI_CHROME_TOKENS = {
    "enter",
    "reply",
    "send",
    "learn more",
    "active now",
    "active",
    "typing",
    "online",
    "offline",
    "delivered",
    "seen",
    "sent",
    "read",
    "just now",
    "accept",
    "decline",
    "block",
    "report",
    "photo",
    "video",
    "sticker",
    "gif",
    "voice message",
    "audio",
}

NAME_BLACKLIST = (
    "active now",
    "you sent",
    "you:",
    "chat info",
    "unread",
    "communities",
    "marketplace",
    "new message",
    "see all",
    "mark all",
    "settings",
    "archive",
    "requests",
    "yesterday",
    "today",
    "just now",
    "typing",
    "facebook user",
    "messenger user",
)
NAME_STOPWORDS = {
    "all",
    "groups",
    "chats",
    "search",
    "message",
    "messages",
    "messenger",
    "enter",
    "ok",
    "yes",
    "no",
    "hi",
    "hey",
    "hello",
}


def is_too_short(text: str, contact_name: str) -> bool:
    return len(text.strip()) < 2


def is_timestamp_text(text: str, contact_name: str) -> bool:
    # Whole-line match only: real messages can mention a weekday or a time.
    blob = text.strip()
    return any(pattern.match(blob) for pattern in TIMESTAMP_PATTERNS)


def is_system_text(text: str, contact_name: str) -> bool:
    lower = text.strip().lower()
    if lower in UI_CHROME_TOKENS:
        return True
    if lower.startswith(SYSTEM_MESSAGE_PREFIXES):
        return True
    return any(marker in lower for marker in SYSTEM_MESSAGE_MARKERS)


def is_contact_name_echo(text: str, contact_name: str) -> bool:
    name = contact_name.strip().lower()
    if not name:
        return False
    lower = text.strip().lower()
    return lower == name or lower == name.split(" ")[0]


DEFAULT_MESSAGE_FILTERS: Tuple[MessageFilter, ...] = (
    is_too_short,
    is_timestamp_text,
    is_system_text,
    is_contact_name_echo,
)


def should_drop(text: str, contact_name: str, filters: Sequence[MessageFilter] = DEFAULT_MESSAGE_FILTERS) -> bool:
    return any(f(text, contact_name) for f in filters)


def build_transcript(
    raw_messages: Iterable[Dict[str, Any]],
    contact_name: str,
    filters: Sequence[MessageFilter] = DEFAULT_MESSAGE_FILTERS,
    observed_ts: Optional[float] = None,
) -> List[Message]:
    """Turn a raw surface read into an ordered, filtered transcript.

    Duplicates are suppressed by exact (role, text) identity within this pass;
    the surface re-renders bubbles and a scroll can yield the same one twice.
    """
    ts = observed_ts if observed_ts is not None else time.time()
    seen: Set[Tuple[str, str]] = set()
    out: List[Message] = []
    for item in raw_messages:
        if not isinstance(item, dict):
            continue
        text = str(item.get("text") or "").strip()
        sender = OURS if item.get("sender") == OURS else THEIRS
        if should_drop(text, contact_name, filters):
            continue
        key = (sender, text)
        if key in seen:
            continue
        seen.add(key)
        out.append(Message(sender=sender, text=text, index=len(out), observed_ts=ts))
    return out


def is_valid_contact_name(name: str) -> bool:
    text = (name or "").strip()
    lower = text.lower()
    if not 2 <= len(text) <= 100:
        return False
    if lower in NAME_STOPWORDS:
        return False
    return not any(blocked in lower for blocked in NAME_BLACKLIST)


def get_display_name(full_name: str) -> str:
    first = (full_name or "").strip().split(" ")[0].strip()
    if re.match(r"^[؀-ۿ]+$", first):
        return first
    if re.match(r"^[A-Z][a-z]{1,15}$", first):
        return first
    return "there"
