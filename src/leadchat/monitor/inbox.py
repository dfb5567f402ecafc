from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from ..surface_client import MessageSurface
from .message_filters import is_valid_contact_name
from .orchestrator import ContactOutcome, ReplyOrchestrator

logger = logging.getLogger("leadchat.monitor")


@dataclass
class InboxScanResult:
    processed: List[str] = field(default_factory=list)
    outcomes: List[ContactOutcome] = field(default_factory=list)
    skipped: int = 0

    @property
    def activity(self) -> bool:
        return any(o.activity for o in self.outcomes)

    @property
    def last_opened(self) -> Optional[str]:
        for outcome in reversed(self.outcomes):
            if outcome.status not in {"open_failed", "do_not_reply"}:
                return outcome.contact_name
        return None


def scan_inbox(
    surface: MessageSurface,
    orchestrator: ReplyOrchestrator,
    skip_names: Iterable[str] = (),
    limit: int = 3,
) -> InboxScanResult:
    """Second entry path: feed unread contacts through one orchestrator pass each."""
    result = InboxScanResult()
    seen: Set[str] = {n.strip().lower() for n in skip_names if n}
    for item in surface.list_unread_contacts():
        if len(result.processed) >= max(0, limit):
            break
        name = str(item.get("name") or "").strip()
        key = name.lower()
        if not is_valid_contact_name(name):
            logger.debug("Inbox skip invalid name=%r", name)
            result.skipped += 1
            continue
        if item.get("preview_is_ours"):
            logger.debug("Inbox skip contact=%s reason=preview_is_ours", name)
            result.skipped += 1
            continue
        if key in seen:
            result.skipped += 1
            continue
        seen.add(key)
        logger.info("Inbox unread contact=%s preview=%r", name, str(item.get("preview_text") or "")[:60])
        outcome = orchestrator.process_contact(name)
        result.processed.append(name)
        result.outcomes.append(outcome)
    if result.processed:
        logger.info("Inbox scan processed=%s skipped=%s", len(result.processed), result.skipped)
    return result
