from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from ..surface_client import MessageSurface, SurfaceClient, SurfaceSessionError
from .config import Config, load_config
from .inbox import scan_inbox
from .logging_utils import setup_logging
from .models import ConversationHandled
from .notifications import notify_session_problem
from .orchestrator import ContactOutcome, OrchestratorStats, ReplyOrchestrator
from .store import ContactStore


class StopReason(str, Enum):
    IDLE_TIMEOUT = "idle_timeout"
    SURFACE_CLOSED = "surface_closed"
    SESSION_ERROR = "session_error"
    CANCELLED = "cancelled"
    MAX_CYCLES = "max_cycles"
    ERROR = "error"


@dataclass
class RunResult:
    reason: StopReason
    cycles: int = 0
    elapsed_seconds: float = 0.0
    stats: OrchestratorStats = field(default_factory=OrchestratorStats)
    conversations_handled: List[ConversationHandled] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self):
        return {
            "reason": self.reason.value,
            "cycles": self.cycles,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "error": self.error,
            "replies_sent": self.stats.replies_sent,
            "policy_calls": self.stats.policy_calls,
            "stage_transitions": self.stats.stage_transitions,
            "conversations_handled": len(self.conversations_handled),
        }


class MonitorLoop:
    """Polls the surface until idle, cancelled, or the session is lost.

    `clock` and `sleep` are injectable so tests can run on simulated time; the
    same `sleep` is handed to the orchestrator for burst polling and retries.
    """

    def __init__(
        self,
        cfg: Config,
        surface: MessageSurface,
        store: ContactStore,
        orchestrator: Optional[ReplyOrchestrator] = None,
        *,
        initial_contact: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.cfg = cfg
        self.surface = surface
        self.store = store
        self.orchestrator = orchestrator or ReplyOrchestrator(cfg, surface, store, sleep=sleep)
        self.monitored_contact = initial_contact
        self.clock = clock
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.stop_event = stop_event or threading.Event()
        self.logger = logging.getLogger("leadchat.monitor")

    def _record(self, outcome: ContactOutcome, result: RunResult) -> bool:
        if outcome.handled:
            result.conversations_handled.append(outcome.handled)
        return outcome.activity

    def _stop_reason(self, cycles: int, last_activity: float) -> Optional[StopReason]:
        if self.stop_event.is_set():
            return StopReason.CANCELLED
        if self.cfg.max_cycles > 0 and cycles >= self.cfg.max_cycles:
            return StopReason.MAX_CYCLES
        if self.clock() - last_activity >= self.cfg.idle_timeout_seconds:
            return StopReason.IDLE_TIMEOUT
        return None

    def run_cycle(self, result: RunResult) -> bool:
        """One pass: monitored contact first, then the inbox. Returns True on activity."""
        activity = False
        processed: List[str] = []
        if self.monitored_contact:
            outcome = self.orchestrator.process_contact(self.monitored_contact)
            processed.append(self.monitored_contact)
            activity = self._record(outcome, result) or activity
        scan = scan_inbox(
            self.surface,
            self.orchestrator,
            skip_names=processed,
            limit=self.cfg.max_inbox_contacts_per_cycle,
        )
        for outcome in scan.outcomes:
            activity = self._record(outcome, result) or activity
        if scan.last_opened and scan.last_opened != self.monitored_contact:
            self.logger.info("Monitoring contact=%s", scan.last_opened)
            self.monitored_contact = scan.last_opened
        return activity

    def run(self) -> RunResult:
        started = self.clock()
        last_activity = started
        result = RunResult(reason=StopReason.ERROR, stats=self.orchestrator.stats)
        cycles = 0
        while True:
            reason = self._stop_reason(cycles, last_activity)
            if reason:
                break
            cycles += 1
            try:
                if not self.surface.ping():
                    self.logger.error("Surface unreachable; stopping cycle=%s", cycles)
                    reason = StopReason.SURFACE_CLOSED
                    break
                if self.run_cycle(result):
                    last_activity = self.clock()
            except SurfaceSessionError as e:
                notify_session_problem(
                    self.store,
                    self.cfg.account_id,
                    "session_error",
                    str(e),
                    webhook_url=self.cfg.alert_webhook_url,
                )
                reason = StopReason.SESSION_ERROR
                result.error = str(e)
                break
            except Exception as e:
                self.logger.exception("Monitor loop failed cycle=%s error=%s", cycles, e)
                reason = StopReason.ERROR
                result.error = str(e)
                break
            if self.stop_event.is_set():
                continue
            delay = self.rng.uniform(self.cfg.cycle_delay_min_seconds, self.cfg.cycle_delay_max_seconds)
            self.logger.debug("Sleeping seconds=%.1f cycle=%s", delay, cycles)
            self.sleep(delay)

        result.reason = reason
        result.cycles = cycles
        result.elapsed_seconds = self.clock() - started
        self.logger.info(
            "Monitor loop stopped reason=%s cycles=%s replies_sent=%s handled=%s",
            reason.value,
            cycles,
            result.stats.replies_sent,
            len(result.conversations_handled),
        )
        return result


def run_loop(
    initial_contact: Optional[str] = None,
    stop_event: Optional[threading.Event] = None,
) -> RunResult:
    cfg = load_config()
    logger = setup_logging(cfg)
    surface = SurfaceClient(base_url=cfg.surface_base_url)
    store = ContactStore(cfg.state_db_path)

    logger.info(
        (
            "Monitor loop starting account=%s idle_timeout=%s cycle_delay=%s-%s burst=%s/%s "
            "inbox_limit=%s max_cycles=%s openai_configured=%s dry_run=%s state_db=%s"
        ),
        cfg.account_id,
        cfg.idle_timeout_seconds,
        cfg.cycle_delay_min_seconds,
        cfg.cycle_delay_max_seconds,
        cfg.burst_settle_checks,
        cfg.burst_max_polls,
        cfg.max_inbox_contacts_per_cycle,
        cfg.max_cycles,
        bool(cfg.openai_api_key),
        cfg.dry_run,
        cfg.state_db_path,
    )
    if cfg.log_path:
        logger.info("File logging enabled path=%s", cfg.log_path)
    if cfg.do_not_reply_contacts:
        logger.info("Do-not-reply contacts=%s", len(cfg.do_not_reply_contacts))

    archived = store.archive_inactive(cfg.account_id, cfg.inactive_days)
    if archived:
        logger.info("Archived inactive contacts count=%s inactive_days=%s", archived, cfg.inactive_days)

    loop = MonitorLoop(cfg, surface, store, initial_contact=initial_contact, stop_event=stop_event)
    return loop.run()
