from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


OURS = "ours"
THEIRS = "theirs"


class ConversationState(str, Enum):
    NEW = "NEW"
    WAITING = "WAITING"
    NEEDS_REPLY = "NEEDS_REPLY"
    ENDED = "ENDED"
    ARCHIVED = "ARCHIVED"


class ChangeStatus(str, Enum):
    UNCHANGED = "unchanged"
    NEW_INBOUND = "new-inbound"
    OWN_MESSAGE_CONFIRMED = "own-message-confirmed"


# Lead qualification stages. The lead record only moves forward along this
# order; LOST and CONVERTED are always accepted.
LEAD_STAGE_ORDER = ["LEAD", "INTERESTED", "CTA_WHATSAPP", "CTA_PHONE", "CONVERTED", "LOST"]
POLICY_STAGES = {"INTERESTED", "CTA_WHATSAPP", "CTA_PHONE", "CONVERTED", "LOST"}


@dataclass(frozen=True)
class Message:
    sender: str
    text: str
    index: int = 0
    observed_ts: Optional[float] = None

    @property
    def is_ours(self) -> bool:
        return self.sender == OURS


@dataclass(frozen=True)
class Fingerprint:
    digest: str
    inbound: int
    outbound: int

    @classmethod
    def empty(cls) -> "Fingerprint":
        return cls(digest="", inbound=0, outbound=0)


@dataclass
class Contact:
    contact_id: str
    account_id: str
    name: str
    state: ConversationState = ConversationState.NEW
    fingerprint: Optional[Fingerprint] = None
    last_activity_ts: Optional[float] = None
    lead_id: Optional[str] = None
    lead_stage: Optional[str] = None
    contact_info: Optional[str] = None
    end_reason: Optional[str] = None
    pending_digest: Optional[str] = None
    pending_decision: Optional[Dict[str, Any]] = None


@dataclass
class StageIntent:
    stage: str
    reason: str = ""
    extracted_info: Optional[str] = None


@dataclass
class EndIntent:
    reason: str = "ai_ended"


@dataclass
class PolicyDecision:
    reply_text: str = ""
    advance_stage: Optional[StageIntent] = None
    end: Optional[EndIntent] = None
    source: str = "policy"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"reply_text": self.reply_text, "source": self.source}
        if self.advance_stage:
            payload["advance_stage"] = {
                "stage": self.advance_stage.stage,
                "reason": self.advance_stage.reason,
                "extracted_info": self.advance_stage.extracted_info,
            }
        if self.end:
            payload["end"] = {"reason": self.end.reason}
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PolicyDecision":
        stage_raw = payload.get("advance_stage")
        end_raw = payload.get("end")
        advance_stage = None
        if isinstance(stage_raw, dict) and stage_raw.get("stage"):
            advance_stage = StageIntent(
                stage=str(stage_raw["stage"]),
                reason=str(stage_raw.get("reason") or ""),
                extracted_info=stage_raw.get("extracted_info"),
            )
        end = None
        if isinstance(end_raw, dict):
            end = EndIntent(reason=str(end_raw.get("reason") or "ai_ended"))
        return cls(
            reply_text=str(payload.get("reply_text") or ""),
            advance_stage=advance_stage,
            end=end,
            source=str(payload.get("source") or "policy"),
        )


@dataclass
class LeadContext:
    post_text: str
    author_name: str
    matched_service: Optional[str] = None
    group_name: str = ""
    posted_at: Optional[str] = None


@dataclass
class ChangeResult:
    status: ChangeStatus
    fingerprint: Fingerprint
    new_inbound: List[Message] = field(default_factory=list)


@dataclass
class ConversationHandled:
    contact_name: str
    messages_read: int
    reply_sent: bool
    reply_text: str
    stage_updated: Optional[str] = None
    extracted_phone: Optional[str] = None
    extracted_whatsapp: Optional[str] = None
