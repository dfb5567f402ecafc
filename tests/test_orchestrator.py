import json
import tempfile
import time
import unittest
from pathlib import Path
from types import SimpleNamespace

from leadchat.monitor.detector import compute_fingerprint
from leadchat.monitor.message_filters import build_transcript
from leadchat.monitor.models import ConversationState, EndIntent, Fingerprint, PolicyDecision, StageIntent
from leadchat.monitor.orchestrator import ReplyOrchestrator
from leadchat.monitor.store import ContactStore
from leadchat.surface_client import SurfaceSessionError

CONTACT = "Sami Ben Ali"

HISTORY = [
    {"sender": "theirs", "text": "Hello, I saw your post"},
    {"sender": "ours", "text": "Hi! We build websites"},
    {"sender": "theirs", "text": "Can you do an online store?"},
    {"sender": "ours", "text": "Yes we can"},
]


def _cfg(tmp: Path, **overrides):
    base = dict(
        account_id="acct",
        state_db_path=tmp / "state.sqlite3",
        journal_path=tmp / "journal.jsonl",
        burst_poll_seconds=0,
        burst_settle_checks=2,
        burst_max_polls=6,
        extraction_retries=2,
        extraction_retry_seconds=0,
        services_path=None,
        persona_path=None,
        do_not_reply_contacts=[],
        openai_api_key=None,
        openai_base_url="https://api.openai.com/v1",
        openai_model="gpt-4o-mini",
        openai_temperature=0.7,
        fallback_reply="Hi! How can I help you?",
        dry_run=False,
    )
    base.update(overrides)
    return SimpleNamespace(**base)


class FakeSurface:
    def __init__(self, transcripts=None):
        self.transcripts = {k: [dict(m) for m in v] for k, v in (transcripts or {}).items()}
        self.current = None
        self.opened = []
        self.sent = []
        self.send_ok = True
        self.reads = 0
        self.unreadable = False
        self.arrivals = {}
        self.lagged = {}
        self.session_error = None

    def ping(self):
        return True

    def list_unread_contacts(self):
        return []

    def open_contact(self, name):
        self.opened.append(name)
        if name not in self.transcripts:
            return False
        self.current = name
        return True

    def read_transcript(self, name):
        if self.session_error:
            raise self.session_error
        self.reads += 1
        if self.reads in self.arrivals:
            self.transcripts[name].append({"sender": "theirs", "text": self.arrivals.pop(self.reads)})
        if self.unreadable:
            return None
        rendered = [dict(m) for m in self.transcripts.get(name, [])]
        dropped = self.lagged.pop(self.reads, 0)
        return rendered[: len(rendered) - dropped]

    def send_message(self, text):
        if not self.send_ok:
            return False
        self.sent.append((self.current, text))
        self.transcripts[self.current].append({"sender": "ours", "text": text})
        return True

    def receive(self, name, text):
        self.transcripts[name].append({"sender": "theirs", "text": text})


class FakePolicy:
    def __init__(self, *decisions, on_call=None):
        self.decisions = list(decisions)
        self.calls = []
        self.on_call = on_call

    def __call__(self, transcript, context):
        self.calls.append([m.text for m in transcript])
        if self.on_call:
            self.on_call()
        if len(self.decisions) > 1:
            return self.decisions.pop(0)
        return self.decisions[0]


class ReplyOrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.cfg = _cfg(self.tmp)
        self.store = ContactStore(self.cfg.state_db_path)
        self.surface = FakeSurface({CONTACT: HISTORY})

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _orchestrator(self, policy=None, cfg=None):
        return ReplyOrchestrator(cfg or self.cfg, self.surface, self.store, policy=policy, sleep=lambda s: None)

    def _seed_waiting(self) -> Fingerprint:
        contact = self.store.ensure_contact("acct", CONTACT)
        fp = compute_fingerprint(build_transcript(HISTORY, CONTACT))
        self.store.persist_fingerprint(contact.contact_id, fp, ConversationState.WAITING)
        return fp

    def _contact(self):
        return self.store.get_contact("acct", CONTACT)

    def test_new_inbound_gets_one_reply_and_returns_to_waiting(self):
        self._seed_waiting()
        self.surface.receive(CONTACT, "what's the price?")
        policy = FakePolicy(PolicyDecision(reply_text="It starts at 800 TND"))

        outcome = self._orchestrator(policy).process_contact(CONTACT)

        self.assertEqual(outcome.status, "replied")
        self.assertTrue(outcome.activity)
        self.assertEqual(len(policy.calls), 1)
        self.assertEqual(policy.calls[0][-1], "what's the price?")
        self.assertEqual(self.surface.sent, [(CONTACT, "It starts at 800 TND")])
        contact = self._contact()
        self.assertEqual(contact.state, ConversationState.WAITING)
        self.assertEqual((contact.fingerprint.inbound, contact.fingerprint.outbound), (3, 3))
        self.assertIsNone(contact.pending_decision)

    def test_stage_only_decision_sends_nothing_and_stays_needs_reply(self):
        self._seed_waiting()
        self.surface.receive(CONTACT, "call me on +216 12 345 678")
        policy = FakePolicy(
            PolicyDecision(
                reply_text="",
                advance_stage=StageIntent(stage="CTA_PHONE", reason="shared number", extracted_info="+21612345678"),
            )
        )
        orchestrator = self._orchestrator(policy)

        outcome = orchestrator.process_contact(CONTACT)

        self.assertEqual(outcome.status, "stage_only")
        self.assertEqual(self.surface.sent, [])
        contact = self._contact()
        self.assertEqual(contact.state, ConversationState.NEEDS_REPLY)
        self.assertEqual(contact.lead_stage, "CTA_PHONE")
        self.assertEqual(contact.contact_info, "+21612345678")
        self.assertEqual(outcome.handled.extracted_phone, "+21612345678")

        # The same change is not handed to the policy twice.
        self.assertEqual(orchestrator.process_contact(CONTACT).status, "unchanged")
        self.assertEqual(len(policy.calls), 1)

    def test_burst_is_answered_with_a_single_reply(self):
        self._seed_waiting()
        self.surface.receive(CONTACT, "hello?")
        self.surface.arrivals = {2: "I need it by next month", 3: "and a logo too"}
        policy = FakePolicy(PolicyDecision(reply_text="Sure, we can do both"))

        self._orchestrator(policy).process_contact(CONTACT)

        self.assertEqual(len(policy.calls), 1)
        self.assertEqual(policy.calls[0][-3:], ["hello?", "I need it by next month", "and a logo too"])
        self.assertEqual(len(self.surface.sent), 1)

    def test_message_arriving_before_send_aborts_the_reply(self):
        self._seed_waiting()
        self.surface.receive(CONTACT, "what's the price?")
        policy = FakePolicy(
            PolicyDecision(reply_text="It starts at 800 TND"),
            PolicyDecision(reply_text="800 TND for the store and logo"),
            on_call=None,
        )
        policy.on_call = lambda: self.surface.receive(CONTACT, "and for a logo?") if len(policy.calls) == 1 else None
        orchestrator = self._orchestrator(policy)

        outcome = orchestrator.process_contact(CONTACT)

        self.assertEqual(outcome.status, "presend_aborted")
        self.assertEqual(self.surface.sent, [])
        contact = self._contact()
        self.assertEqual(contact.state, ConversationState.NEEDS_REPLY)
        self.assertIsNone(contact.pending_decision)

        outcome = orchestrator.process_contact(CONTACT)
        self.assertEqual(outcome.status, "replied")
        self.assertEqual(len(policy.calls), 2)
        self.assertEqual(policy.calls[1][-2:], ["what's the price?", "and for a logo?"])
        self.assertEqual(self.surface.sent, [(CONTACT, "800 TND for the store and logo")])

    def test_unreadable_surface_before_send_aborts_the_reply(self):
        self._seed_waiting()
        self.surface.receive(CONTACT, "what's the price?")

        def _break_surface():
            self.surface.unreadable = True

        policy = FakePolicy(PolicyDecision(reply_text="It starts at 800 TND"), on_call=_break_surface)
        outcome = self._orchestrator(policy).process_contact(CONTACT)

        self.assertEqual(outcome.status, "presend_aborted")
        self.assertEqual(self.surface.sent, [])
        self.assertEqual(self._contact().state, ConversationState.NEEDS_REPLY)

    def test_send_failure_keeps_needs_reply_and_retries_without_new_policy_call(self):
        seeded = self._seed_waiting()
        self.surface.receive(CONTACT, "I'm interested, how much?")
        policy = FakePolicy(
            PolicyDecision(reply_text="It starts at 800 TND", advance_stage=StageIntent(stage="INTERESTED", reason="asked price"))
        )
        orchestrator = self._orchestrator(policy)
        self.surface.send_ok = False

        outcome = orchestrator.process_contact(CONTACT)

        self.assertEqual(outcome.status, "send_failed")
        contact = self._contact()
        self.assertEqual(contact.state, ConversationState.NEEDS_REPLY)
        self.assertEqual(contact.fingerprint, seeded)
        self.assertIsNotNone(contact.pending_decision)
        # Stage is persisted even though the reply never went out.
        self.assertEqual(contact.lead_stage, "INTERESTED")

        self.surface.send_ok = True
        outcome = orchestrator.process_contact(CONTACT)

        self.assertEqual(outcome.status, "replied")
        self.assertTrue(outcome.reply_sent)
        self.assertFalse(outcome.policy_invoked)
        self.assertEqual(len(policy.calls), 1)
        self.assertEqual(orchestrator.stats.pending_reused, 1)
        self.assertEqual(len(self.store.stage_transitions(contact.contact_id)), 1)
        self.assertEqual(self._contact().state, ConversationState.WAITING)

    def test_end_intent_sends_closing_and_reopens_on_new_inbound(self):
        self._seed_waiting()
        self.surface.receive(CONTACT, "ok call me tomorrow, bye")
        policy = FakePolicy(
            PolicyDecision(reply_text="Talk tomorrow!", end=EndIntent(reason="call scheduled")),
            PolicyDecision(reply_text="Of course, what else?"),
        )
        orchestrator = self._orchestrator(policy)

        self.assertEqual(orchestrator.process_contact(CONTACT).status, "ended")
        contact = self._contact()
        self.assertEqual(contact.state, ConversationState.ENDED)
        self.assertEqual(contact.end_reason, "call scheduled")
        self.assertEqual(self.surface.sent, [(CONTACT, "Talk tomorrow!")])

        self.assertEqual(orchestrator.process_contact(CONTACT).status, "ended_wait")

        self.surface.receive(CONTACT, "one more question")
        outcome = orchestrator.process_contact(CONTACT)
        self.assertEqual(outcome.status, "replied")
        self.assertEqual(self._contact().state, ConversationState.WAITING)
        self.assertEqual(len(policy.calls), 2)

    def test_end_intent_without_closing_text_ends_silently(self):
        self._seed_waiting()
        self.surface.receive(CONTACT, "not interested, thanks")
        policy = FakePolicy(
            PolicyDecision(reply_text="", advance_stage=StageIntent(stage="LOST"), end=EndIntent(reason="declined"))
        )
        outcome = self._orchestrator(policy).process_contact(CONTACT)

        self.assertEqual(outcome.status, "ended")
        self.assertEqual(self.surface.sent, [])
        self.assertEqual(self._contact().state, ConversationState.ENDED)
        self.assertEqual(self._contact().lead_stage, "LOST")

    def test_archived_contact_reactivates_on_new_inbound(self):
        self._seed_waiting()
        self.store.archive_inactive("acct", 1, now=time.time() + 3 * 86400)
        self.assertEqual(self._contact().state, ConversationState.ARCHIVED)
        self.surface.receive(CONTACT, "are you still available?")

        outcome = self._orchestrator(FakePolicy(PolicyDecision(reply_text="Yes!"))).process_contact(CONTACT)

        self.assertEqual(outcome.status, "replied")
        self.assertEqual(self._contact().state, ConversationState.WAITING)

    def test_lagged_read_after_reply_does_not_reply_again(self):
        self._seed_waiting()
        self.surface.receive(CONTACT, "what's the price?")
        policy = FakePolicy(PolicyDecision(reply_text="It starts at 800 TND"))
        orchestrator = self._orchestrator(policy)
        self.assertEqual(orchestrator.process_contact(CONTACT).status, "replied")

        # Next cycle's first read misses our reply; later reads render it again.
        self.surface.lagged = {self.surface.reads + 1: 1}
        outcome = orchestrator.process_contact(CONTACT)

        self.assertEqual(outcome.status, "unchanged")
        self.assertEqual(len(policy.calls), 1)
        self.assertEqual(self.surface.sent, [(CONTACT, "It starts at 800 TND")])
        self.assertEqual(orchestrator.process_contact(CONTACT).status, "unchanged")
        self.assertEqual(self._contact().state, ConversationState.WAITING)

    def test_reply_revealed_during_burst_counts_as_answered(self):
        contact = self.store.ensure_contact("acct", CONTACT)
        self.store.persist_fingerprint(
            contact.contact_id, compute_fingerprint(build_transcript(HISTORY, CONTACT)), ConversationState.WAITING
        )
        self.store.save_pending(contact.contact_id, "stale", PolicyDecision(reply_text="old answer").to_dict())
        self.surface.receive(CONTACT, "what's the price?")
        self.surface.transcripts[CONTACT].append({"sender": "ours", "text": "800 TND for a basic store"})
        self.surface.lagged = {1: 1}
        policy = FakePolicy(PolicyDecision(reply_text="It starts at 800 TND"))

        outcome = self._orchestrator(policy).process_contact(CONTACT)

        self.assertEqual(outcome.status, "already_answered")
        self.assertEqual(policy.calls, [])
        self.assertEqual(self.surface.sent, [])
        contact = self._contact()
        self.assertEqual(contact.state, ConversationState.WAITING)
        self.assertEqual((contact.fingerprint.inbound, contact.fingerprint.outbound), (3, 3))
        self.assertIsNone(contact.pending_decision)

    def test_archived_contact_stays_archived_when_last_message_is_ours(self):
        self._seed_waiting()
        self.store.archive_inactive("acct", 1, now=time.time() + 3 * 86400)
        archived_at = self._contact().last_activity_ts
        policy = FakePolicy(PolicyDecision(reply_text="unused"))
        orchestrator = self._orchestrator(policy)

        self.assertEqual(orchestrator.process_contact(CONTACT).status, "archived_wait")

        self.surface.transcripts[CONTACT].append({"sender": "ours", "text": "Still interested?"})
        self.assertEqual(orchestrator.process_contact(CONTACT).status, "own_message_confirmed")
        self.assertEqual(orchestrator.process_contact(CONTACT).status, "archived_wait")

        contact = self._contact()
        self.assertEqual(contact.state, ConversationState.ARCHIVED)
        self.assertEqual(contact.last_activity_ts, archived_at)
        self.assertEqual(contact.fingerprint.outbound, 3)
        self.assertEqual(policy.calls, [])

    def test_ended_contact_ignores_lagged_read(self):
        self._seed_waiting()
        self.surface.receive(CONTACT, "ok bye")
        policy = FakePolicy(PolicyDecision(reply_text="Bye!", end=EndIntent(reason="goodbye")))
        orchestrator = self._orchestrator(policy)
        self.assertEqual(orchestrator.process_contact(CONTACT).status, "ended")

        self.surface.lagged = {self.surface.reads + 1: 1}
        self.assertEqual(orchestrator.process_contact(CONTACT).status, "ended_wait")
        self.assertEqual(orchestrator.process_contact(CONTACT).status, "ended_wait")

        self.assertEqual(self._contact().state, ConversationState.ENDED)
        self.assertEqual(len(policy.calls), 1)
        self.assertEqual(self.surface.sent, [(CONTACT, "Bye!")])

    def test_first_observation_uses_lead_context(self):
        self.store.add_lead(post_text="Looking for an online store", author_name=CONTACT, matched_service="E-commerce")
        self.surface.transcripts[CONTACT] = [{"sender": "theirs", "text": "Hello, how much?"}]
        seen = []

        def _policy(transcript, context):
            seen.append(context)
            return PolicyDecision(reply_text="Hi Sami, I saw your post")

        outcome = self._orchestrator(_policy).process_contact(CONTACT)

        self.assertEqual(outcome.status, "replied")
        self.assertEqual(seen[0].lead.post_text, "Looking for an online store")

    def test_own_message_refreshes_fingerprint(self):
        contact = self.store.ensure_contact("acct", CONTACT)
        fp = compute_fingerprint(build_transcript(HISTORY[:3], CONTACT))
        self.store.persist_fingerprint(contact.contact_id, fp, ConversationState.NEEDS_REPLY)
        policy = FakePolicy(PolicyDecision(reply_text="unused"))

        outcome = self._orchestrator(policy).process_contact(CONTACT)

        self.assertEqual(outcome.status, "own_message_confirmed")
        self.assertFalse(outcome.activity)
        self.assertEqual(self._contact().state, ConversationState.WAITING)
        self.assertEqual(self._contact().fingerprint.outbound, 2)
        self.assertEqual(policy.calls, [])

    def test_unchanged_transcript_is_a_no_op(self):
        self._seed_waiting()
        policy = FakePolicy(PolicyDecision(reply_text="unused"))
        outcome = self._orchestrator(policy).process_contact(CONTACT)
        self.assertEqual(outcome.status, "unchanged")
        self.assertEqual(policy.calls, [])

    def test_extraction_failure_is_retried_then_skipped(self):
        self.surface.unreadable = True
        orchestrator = self._orchestrator(FakePolicy(PolicyDecision(reply_text="unused")))

        outcome = orchestrator.process_contact(CONTACT)

        self.assertEqual(outcome.status, "extraction_skipped")
        self.assertEqual(self.surface.reads, 2)
        self.assertEqual(orchestrator.stats.extraction_skips, 1)
        self.assertIsNone(self._contact())

    def test_session_error_propagates(self):
        self.surface.session_error = SurfaceSessionError("logged out")
        with self.assertRaises(SurfaceSessionError):
            self._orchestrator(FakePolicy(PolicyDecision(reply_text="unused"))).process_contact(CONTACT)

    def test_policy_failure_falls_back_to_placeholder(self):
        self._seed_waiting()
        self.surface.receive(CONTACT, "hello?")

        outcome = self._orchestrator().process_contact(CONTACT)

        self.assertEqual(outcome.status, "replied")
        self.assertEqual(self.surface.sent, [(CONTACT, "Hi! How can I help you?")])

    def test_do_not_reply_contact_is_skipped(self):
        cfg = _cfg(self.tmp, do_not_reply_contacts=[CONTACT.lower()])
        outcome = self._orchestrator(FakePolicy(PolicyDecision(reply_text="unused")), cfg=cfg).process_contact(CONTACT)
        self.assertEqual(outcome.status, "do_not_reply")
        self.assertEqual(self.surface.opened, [])

    def test_dry_run_does_not_send_or_reply_again(self):
        self._seed_waiting()
        self.surface.receive(CONTACT, "what's the price?")
        cfg = _cfg(self.tmp, dry_run=True)
        policy = FakePolicy(PolicyDecision(reply_text="It starts at 800 TND"))
        orchestrator = self._orchestrator(policy, cfg=cfg)

        self.assertEqual(orchestrator.process_contact(CONTACT).status, "replied")
        self.assertEqual(self.surface.sent, [])
        self.assertEqual(orchestrator.process_contact(CONTACT).status, "unchanged")
        self.assertEqual(len(policy.calls), 1)

    def test_handled_conversation_is_journaled(self):
        self._seed_waiting()
        self.surface.receive(CONTACT, "my whatsapp is 22333444")
        policy = FakePolicy(
            PolicyDecision(
                reply_text="Thanks, we will message you there",
                advance_stage=StageIntent(stage="CTA_WHATSAPP", extracted_info="22333444"),
            )
        )
        self._orchestrator(policy).process_contact(CONTACT)

        rows = [json.loads(line) for line in self.cfg.journal_path.read_text(encoding="utf-8").splitlines()]
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["contact_name"], CONTACT)
        self.assertTrue(rows[0]["reply_sent"])
        self.assertEqual(rows[0]["stage_updated"], "CTA_WHATSAPP")
        self.assertEqual(rows[0]["extracted_whatsapp"], "22333444")


if __name__ == "__main__":
    unittest.main()
