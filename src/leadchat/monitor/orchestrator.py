from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from ..surface_client import MessageSurface
from .burst import collect_burst
from .config import Config
from .conversation_journal import append_conversation_journal
from .detector import compute_fingerprint, detect_change, transcript_digest
from .message_filters import build_transcript
from .models import (
    OURS,
    ChangeStatus,
    Contact,
    ConversationHandled,
    ConversationState,
    Message,
    PolicyDecision,
    StageIntent,
)
from .policy import (
    PolicyContext,
    clean_reply,
    extract_contact_info,
    invoke_policy,
    load_persona_text,
    load_services_text,
)
from .store import ContactStore

logger = logging.getLogger("leadchat.monitor")

PolicyFn = Callable[[Sequence[Message], PolicyContext], PolicyDecision]


@dataclass
class ContactOutcome:
    contact_name: str
    status: str
    new_inbound: int = 0
    reply_sent: bool = False
    policy_invoked: bool = False
    handled: Optional[ConversationHandled] = None

    @property
    def activity(self) -> bool:
        # Only new inbound and successful sends count as state-changing activity.
        return self.new_inbound > 0 or self.reply_sent


@dataclass
class OrchestratorStats:
    contacts_checked: int = 0
    new_inbound_detected: int = 0
    policy_calls: int = 0
    pending_reused: int = 0
    replies_sent: int = 0
    send_failures: int = 0
    presend_aborts: int = 0
    stage_transitions: int = 0
    conversations_ended: int = 0
    extraction_skips: int = 0
    counts: Dict[str, int] = field(default_factory=dict)

    def bump(self, status: str) -> None:
        self.counts[status] = self.counts.get(status, 0) + 1


class ReplyOrchestrator:
    """Drives one contact through the conversation state machine per call.

    The store is read before every write; `_cache` only remembers the last
    contact row seen so the loop can log without an extra query.
    """

    def __init__(
        self,
        cfg: Config,
        surface: MessageSurface,
        store: ContactStore,
        policy: Optional[PolicyFn] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self.surface = surface
        self.store = store
        self.sleep = sleep
        self.stats = OrchestratorStats()
        self.current_contact: Optional[str] = None
        self._cache: Dict[str, Contact] = {}
        self._services_text = load_services_text(cfg.services_path)
        self._persona_text = load_persona_text(cfg.persona_path)
        self._policy: PolicyFn = policy or (lambda transcript, context: invoke_policy(cfg, transcript, context))

    def ensure_open(self, name: str) -> bool:
        if self.current_contact == name:
            return True
        if not self.surface.open_contact(name):
            logger.warning("Could not open contact=%s", name)
            return False
        self.current_contact = name
        return True

    def read_transcript(self, name: str) -> Optional[List[Message]]:
        """Read and filter the transcript with bounded retries; None when the surface stays empty."""
        attempts = max(1, self.cfg.extraction_retries)
        for attempt in range(1, attempts + 1):
            raw = self.surface.read_transcript(name)
            if raw:
                return build_transcript(raw, name)
            if raw is not None and attempt == attempts:
                # An empty list is a readable but empty conversation.
                return []
            logger.debug("Transcript read empty contact=%s attempt=%s/%s", name, attempt, attempts)
            if attempt < attempts:
                self.sleep(self.cfg.extraction_retry_seconds)
        return None

    def _contact_context(self, contact: Contact) -> PolicyContext:
        return PolicyContext(
            contact_name=contact.name,
            lead=self.store.lead_context(contact),
            services_text=self._services_text,
            persona_text=self._persona_text,
        )

    def _decide(self, contact: Contact, transcript: List[Message], trigger: str) -> PolicyDecision:
        if contact.pending_decision and contact.pending_digest == trigger:
            self.stats.pending_reused += 1
            logger.info("Reusing pending decision contact=%s trigger=%s", contact.name, trigger)
            return PolicyDecision.from_dict(contact.pending_decision)
        self.stats.policy_calls += 1
        decision = self._policy(transcript, self._contact_context(contact))
        self.store.save_pending(contact.contact_id, trigger, decision.to_dict())
        return decision

    def _apply_stage(self, contact: Contact, intent: StageIntent, trigger: str) -> bool:
        recorded = self.store.persist_stage_transition(
            contact.contact_id,
            intent.stage,
            intent.extracted_info,
            reason=intent.reason,
            trigger_digest=trigger,
        )
        if recorded:
            self.stats.stage_transitions += 1
            logger.info(
                "Stage transition contact=%s stage=%s reason=%s info=%s",
                contact.name,
                intent.stage,
                intent.reason,
                intent.extracted_info,
            )
        else:
            logger.debug("Stage transition already recorded contact=%s stage=%s", contact.name, intent.stage)
        return recorded

    def _send(self, name: str, text: str) -> bool:
        logger.info("action=send attempt contact=%s chars=%s", name, len(text))
        if self.cfg.dry_run:
            logger.info("Dry run: reply not sent contact=%s text=%r", name, text[:120])
            return True
        sent = self.surface.send_message(text)
        if not sent:
            self.stats.send_failures += 1
            logger.warning("Send failed contact=%s; staying NEEDS_REPLY", name)
        return sent

    def _post_send_transcript(self, name: str, batch: Sequence[Message], text: str) -> List[Message]:
        """Transcript to fingerprint after a send.

        Falls back to the batch plus our reply when the re-read fails or shows
        inbound text we never answered, so that text is still detected next cycle.
        """
        fresh = self.read_transcript(name)
        answered = {m.text for m in batch if not m.is_ours}
        if fresh and not any(not m.is_ours and m.text not in answered for m in fresh):
            return fresh
        synthesized = list(batch)
        if text:
            synthesized.append(Message(sender=OURS, text=text, index=len(synthesized)))
        return synthesized

    def _handled(
        self,
        name: str,
        transcript: Sequence[Message],
        reply_text: str,
        reply_sent: bool,
        intent: Optional[StageIntent],
        trigger: str,
        source: str,
    ) -> ConversationHandled:
        info: Dict[str, str] = {}
        if intent and intent.extracted_info:
            found = extract_contact_info(intent.extracted_info)
            number = next(iter(found.values()), intent.extracted_info)
            key = "whatsapp" if intent.stage == "CTA_WHATSAPP" or "whatsapp" in found else "phone"
            info = {key: number}
        handled = ConversationHandled(
            contact_name=name,
            messages_read=len(transcript),
            reply_sent=reply_sent,
            reply_text=reply_text,
            stage_updated=intent.stage if intent else None,
            extracted_phone=info.get("phone"),
            extracted_whatsapp=info.get("whatsapp"),
        )
        try:
            append_conversation_journal(
                self.cfg.journal_path,
                account_id=self.cfg.account_id,
                handled=handled,
                trigger_digest=trigger,
                source=source,
            )
        except OSError as e:
            logger.warning("Conversation journal write failed path=%s error=%s", self.cfg.journal_path, e)
        return handled

    def process_contact(self, name: str) -> ContactOutcome:
        """Run one state-machine pass for `name`.

        Raises SurfaceSessionError from the surface unchanged; every other
        failure ends as a logged outcome.
        """
        self.stats.contacts_checked += 1
        if name.strip().lower() in self.cfg.do_not_reply_contacts:
            logger.info("Skipping do-not-reply contact=%s", name)
            return self._outcome(ContactOutcome(name, "do_not_reply"))
        if not self.ensure_open(name):
            return self._outcome(ContactOutcome(name, "open_failed"))

        transcript = self.read_transcript(name)
        if transcript is None:
            self.stats.extraction_skips += 1
            logger.warning("Transcript unavailable contact=%s; skipping this cycle", name)
            return self._outcome(ContactOutcome(name, "extraction_skipped"))

        contact = self.store.ensure_contact(self.cfg.account_id, name)
        self._cache[contact.contact_id] = contact
        change = detect_change(contact.fingerprint, transcript)

        # ENDED and ARCHIVED are left only by new inbound.
        dormant = contact.state in (ConversationState.ENDED, ConversationState.ARCHIVED)
        confirmed_state = contact.state if dormant else ConversationState.WAITING
        already_confirmed = (
            change.status == ChangeStatus.OWN_MESSAGE_CONFIRMED
            and change.fingerprint == contact.fingerprint
            and contact.state == confirmed_state
        )
        if change.status == ChangeStatus.UNCHANGED or already_confirmed:
            if dormant:
                logger.debug("Dormant contact=%s state=%s waiting for new inbound", name, contact.state.value)
                status = "ended_wait" if contact.state == ConversationState.ENDED else "archived_wait"
                return self._outcome(ContactOutcome(name, status))
            logger.info("Waiting contact=%s state=%s", name, contact.state.value)
            return self._outcome(ContactOutcome(name, "unchanged"))

        if change.status == ChangeStatus.OWN_MESSAGE_CONFIRMED:
            state = confirmed_state
            self.store.persist_fingerprint(contact.contact_id, change.fingerprint, state, clear_pending=True)
            logger.debug("Own message confirmed contact=%s state=%s", name, state.value)
            return self._outcome(ContactOutcome(name, "own_message_confirmed"))

        self.stats.new_inbound_detected += 1
        logger.info(
            "New inbound contact=%s previous_state=%s messages=%s",
            name,
            contact.state.value,
            len(change.new_inbound),
        )
        if transcript[-1].is_ours:
            # Inbound grew but we already answered it (manual reply or a send
            # confirmed late); nothing is left to reply to.
            return self._outcome(self._already_answered(contact, transcript, len(change.new_inbound)))

        if contact.state != ConversationState.NEEDS_REPLY:
            self.store.set_state(contact.contact_id, ConversationState.NEEDS_REPLY)

        burst = collect_burst(
            lambda: self.read_transcript(name),
            name,
            transcript,
            poll_seconds=self.cfg.burst_poll_seconds,
            settle_checks=self.cfg.burst_settle_checks,
            max_polls=self.cfg.burst_max_polls,
            sleep=self.sleep,
        )
        batch = burst.transcript or list(transcript)
        new_count = len(change.new_inbound) + len(burst.new_messages)
        if batch[-1].is_ours:
            # A lagging first read hid a reply that the burst polls now show.
            return self._outcome(self._already_answered(contact, batch, new_count))
        trigger = transcript_digest(batch)

        reused = bool(contact.pending_decision and contact.pending_digest == trigger)
        decision = self._decide(contact, batch, trigger)
        outcome = ContactOutcome(name, "pending", new_inbound=new_count, policy_invoked=not reused)

        intent = decision.advance_stage
        if intent:
            self._apply_stage(contact, intent, trigger)

        if decision.end:
            return self._outcome(self._finish_end(contact, batch, decision, trigger, outcome))

        reply = decision.reply_text.strip()
        if not reply:
            self.store.persist_fingerprint(
                contact.contact_id,
                compute_fingerprint(batch),
                ConversationState.NEEDS_REPLY,
                clear_pending=True,
            )
            logger.info("No reply with stage update contact=%s; staying NEEDS_REPLY", name)
            outcome.status = "stage_only"
            outcome.handled = self._handled(name, batch, "", False, intent, trigger, decision.source)
            return self._outcome(outcome)

        recheck = self.read_transcript(name)
        if recheck is None:
            self.store.clear_pending(contact.contact_id)
            self.stats.presend_aborts += 1
            logger.warning("Pre-send re-check aborted contact=%s reason=unreadable", name)
            outcome.status = "presend_aborted"
            return self._outcome(outcome)
        answered = {m.text for m in batch if not m.is_ours}
        late = [m for m in recheck if not m.is_ours and m.text not in answered]
        if late:
            self.store.clear_pending(contact.contact_id)
            self.stats.presend_aborts += 1
            logger.info(
                "Pre-send re-check aborted contact=%s reason=new_inbound late=%s",
                name,
                len(late),
            )
            outcome.status = "presend_aborted"
            outcome.new_inbound += len(late)
            return self._outcome(outcome)

        if not self._send(name, reply):
            outcome.status = "send_failed"
            return self._outcome(outcome)

        after = self._post_send_transcript(name, batch, reply)
        self.store.persist_fingerprint(
            contact.contact_id,
            compute_fingerprint(after),
            ConversationState.WAITING,
            clear_pending=True,
        )
        self.stats.replies_sent += 1
        logger.info("REPLY SENT contact=%s source=%s text=%r", name, decision.source, reply[:120])
        outcome.status = "replied"
        outcome.reply_sent = True
        outcome.handled = self._handled(name, batch, reply, True, intent, trigger, decision.source)
        return self._outcome(outcome)

    def _already_answered(self, contact: Contact, transcript: Sequence[Message], new_count: int) -> ContactOutcome:
        self.store.persist_fingerprint(
            contact.contact_id,
            compute_fingerprint(transcript),
            ConversationState.WAITING,
            clear_pending=True,
        )
        logger.info("New inbound already answered contact=%s", contact.name)
        return ContactOutcome(contact.name, "already_answered", new_inbound=new_count)

    def _finish_end(
        self,
        contact: Contact,
        batch: List[Message],
        decision: PolicyDecision,
        trigger: str,
        outcome: ContactOutcome,
    ) -> ContactOutcome:
        closing = clean_reply(decision.reply_text)
        reason = decision.end.reason if decision.end else "ai_ended"
        if closing:
            if not self._send(contact.name, closing):
                outcome.status = "send_failed"
                return outcome
            self.stats.replies_sent += 1
            outcome.reply_sent = True
            after = self._post_send_transcript(contact.name, batch, closing)
        else:
            after = batch
        self.store.persist_fingerprint(
            contact.contact_id,
            compute_fingerprint(after),
            ConversationState.ENDED,
            clear_pending=True,
            end_reason=reason,
        )
        self.stats.conversations_ended += 1
        logger.info("Conversation ended contact=%s reason=%s closing_sent=%s", contact.name, reason, bool(closing))
        outcome.status = "ended"
        outcome.handled = self._handled(
            contact.name,
            batch,
            closing,
            bool(closing),
            decision.advance_stage,
            trigger,
            decision.source,
        )
        return outcome

    def _outcome(self, outcome: ContactOutcome) -> ContactOutcome:
        self.stats.bump(outcome.status)
        return outcome
