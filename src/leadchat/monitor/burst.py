from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Set

from .models import Message

logger = logging.getLogger("leadchat.monitor")

TranscriptReader = Callable[[], Optional[List[Message]]]


@dataclass
class BurstResult:
    transcript: List[Message]
    new_messages: List[Message] = field(default_factory=list)
    polls: int = 0


def collect_burst(
    read: TranscriptReader,
    contact_name: str,
    transcript: Sequence[Message],
    *,
    poll_seconds: float = 0.5,
    settle_checks: int = 3,
    max_polls: int = 20,
    sleep: Callable[[float], None] = time.sleep,
) -> BurstResult:
    """Absorb rapidly arriving follow-ups so one reply answers the whole burst.

    Polls until `settle_checks` consecutive reads add no new inbound text, or
    until `max_polls` reads. Failed reads count toward the cap only.
    """
    latest = list(transcript)
    known: Set[str] = {m.text for m in transcript if not m.is_ours}
    collected: List[Message] = []
    stable = 0
    polls = 0
    while stable < max(1, settle_checks) and polls < max(1, max_polls):
        sleep(poll_seconds)
        polls += 1
        fresh = read()
        if fresh is None:
            logger.debug("Burst poll read failed contact=%s poll=%s", contact_name, polls)
            continue
        latest = fresh
        found_new = False
        for message in fresh:
            if message.is_ours or message.text in known:
                continue
            known.add(message.text)
            collected.append(message)
            found_new = True
            logger.info("Burst collected contact=%s text=%r", contact_name, message.text[:80])
        stable = 0 if found_new else stable + 1
    if polls >= max_polls and stable < settle_checks:
        logger.warning(
            "Burst did not settle contact=%s polls=%s collected=%s",
            contact_name,
            polls,
            len(collected),
        )
    return BurstResult(transcript=latest, new_messages=collected, polls=polls)
