from __future__ import annotations

import hashlib
from typing import List, Optional, Sequence

from .models import ChangeResult, ChangeStatus, Fingerprint, Message


def _normalized_line(message: Message) -> str:
    return f"{message.sender}:{' '.join(message.text.split())}"


def transcript_digest(transcript: Sequence[Message]) -> str:
    """Content-only hash: order, role and whitespace-collapsed text.

    Observation timestamps and order indices are excluded so re-reading the same
    conversation yields the same digest.
    """
    if not transcript:
        return ""
    blob = "\n".join(_normalized_line(m) for m in transcript)
    return hashlib.sha1(blob.encode("utf-8")).hexdigest()[:16]


def compute_fingerprint(transcript: Sequence[Message]) -> Fingerprint:
    inbound = sum(1 for m in transcript if not m.is_ours)
    outbound = sum(1 for m in transcript if m.is_ours)
    return Fingerprint(digest=transcript_digest(transcript), inbound=inbound, outbound=outbound)


def inbound_messages(transcript: Sequence[Message]) -> List[Message]:
    return [m for m in transcript if not m.is_ours]


def detect_change(previous: Optional[Fingerprint], transcript: Sequence[Message]) -> ChangeResult:
    """Classify a fresh read against the last persisted fingerprint.

    Count growth is checked first; a digest change only counts as new inbound
    when the last message is theirs, which covers edits and the first read after
    a restart without reacting to our own sends. A read that lost one of our
    bubbles but no inbound is a render artifact and reads as unchanged.
    """
    prev = previous or Fingerprint.empty()
    current = compute_fingerprint(transcript)
    if not transcript:
        return ChangeResult(status=ChangeStatus.UNCHANGED, fingerprint=current)

    theirs = inbound_messages(transcript)
    last = transcript[-1]

    if current.inbound > prev.inbound:
        return ChangeResult(
            status=ChangeStatus.NEW_INBOUND,
            fingerprint=current,
            new_inbound=theirs[prev.inbound:],
        )
    if current.digest != prev.digest and not last.is_ours:
        if current.inbound == prev.inbound and current.outbound < prev.outbound:
            # Same inbound with fewer of our bubbles: the UI dropped a sent message.
            return ChangeResult(status=ChangeStatus.UNCHANGED, fingerprint=current)
        return ChangeResult(
            status=ChangeStatus.NEW_INBOUND,
            fingerprint=current,
            new_inbound=[last],
        )
    if last.is_ours:
        return ChangeResult(status=ChangeStatus.OWN_MESSAGE_CONFIRMED, fingerprint=current)
    return ChangeResult(status=ChangeStatus.UNCHANGED, fingerprint=current)
