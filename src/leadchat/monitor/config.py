from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
import os


DEFAULT_SERVICES_TEXT = (
    "Digital services agency:\n"
    "- Websites and web applications\n"
    "- Mobile apps (iOS and Android)\n"
    "- E-commerce stores\n"
    "- Digital marketing and social media management\n"
    "- Graphic design and UI/UX\n"
    "- Management systems, automation and bots"
)

DEFAULT_PERSONA_HINT = (
    "You are a sales representative chatting on a messenger app. "
    "Write like a real person: very short messages (about 10 words), no emoji, "
    "never repeat a greeting you already sent, never repeat yourself."
)

DEFAULT_FALLBACK_REPLY = "Hi! How can I help you?"


@dataclass
class Config:
    account_id: str
    surface_base_url: Optional[str]
    state_db_path: Path
    journal_path: Path
    idle_timeout_seconds: float
    cycle_delay_min_seconds: float
    cycle_delay_max_seconds: float
    burst_poll_seconds: float
    burst_settle_checks: int
    burst_max_polls: int
    extraction_retries: int
    extraction_retry_seconds: float
    max_inbox_contacts_per_cycle: int
    max_cycles: int
    inactive_days: int
    services_path: Optional[Path]
    persona_path: Optional[Path]
    do_not_reply_contacts: List[str]
    openai_api_key: Optional[str]
    openai_base_url: str
    openai_model: str
    openai_temperature: float
    fallback_reply: str
    alert_webhook_url: Optional[str]
    log_level: str
    log_path: Optional[Path]
    dry_run: bool


def _parse_csv_env(env_key: str) -> List[str]:
    value = os.getenv(env_key, "")
    if not value.strip():
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _optional_path(env_key: str, default: str = "") -> Optional[Path]:
    value = os.getenv(env_key, default).strip()
    return Path(value) if value else None


def load_config() -> Config:
    account_id = os.getenv("LEADCHAT_ACCOUNT_ID", "default").strip() or "default"
    surface_base_url = os.getenv("LEADCHAT_SURFACE_BASE_URL", "").strip() or None
    state_db_path = Path(os.getenv("LEADCHAT_STATE_DB_PATH", "memory/leadchat.sqlite3"))
    journal_path = Path(os.getenv("LEADCHAT_JOURNAL_PATH", "memory/conversation-journal.jsonl"))

    idle_timeout_seconds = float(os.getenv("LEADCHAT_IDLE_TIMEOUT_SECONDS", "120"))
    cycle_delay_min_seconds = float(os.getenv("LEADCHAT_CYCLE_DELAY_MIN_SECONDS", "3"))
    cycle_delay_max_seconds = float(os.getenv("LEADCHAT_CYCLE_DELAY_MAX_SECONDS", "5"))
    if cycle_delay_max_seconds < cycle_delay_min_seconds:
        cycle_delay_max_seconds = cycle_delay_min_seconds

    burst_poll_seconds = float(os.getenv("LEADCHAT_BURST_POLL_SECONDS", "0.5"))
    burst_settle_checks = int(os.getenv("LEADCHAT_BURST_SETTLE_CHECKS", "3"))
    burst_max_polls = int(os.getenv("LEADCHAT_BURST_MAX_POLLS", "20"))
    extraction_retries = int(os.getenv("LEADCHAT_EXTRACTION_RETRIES", "3"))
    extraction_retry_seconds = float(os.getenv("LEADCHAT_EXTRACTION_RETRY_SECONDS", "1"))
    max_inbox_contacts_per_cycle = int(os.getenv("LEADCHAT_MAX_INBOX_CONTACTS_PER_CYCLE", "3"))
    max_cycles = int(os.getenv("LEADCHAT_MAX_CYCLES", "0"))
    inactive_days = int(os.getenv("LEADCHAT_INACTIVE_DAYS", "7"))

    services_path = _optional_path("LEADCHAT_SERVICES_PATH", "data/services.txt")
    persona_path = _optional_path("LEADCHAT_PERSONA_PATH")
    do_not_reply_contacts = [c.lower() for c in _parse_csv_env("LEADCHAT_DO_NOT_REPLY_CONTACTS")]

    openai_api_key = os.getenv("OPENAI_API_KEY")
    openai_base_url = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
    openai_model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    openai_temperature = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))
    fallback_reply = os.getenv("LEADCHAT_FALLBACK_REPLY", DEFAULT_FALLBACK_REPLY).strip() or DEFAULT_FALLBACK_REPLY

    alert_webhook_url = os.getenv("LEADCHAT_ALERT_WEBHOOK_URL", "").strip() or None
    log_level = os.getenv("LEADCHAT_LOG_LEVEL", "INFO").strip().upper()
    log_path = _optional_path("LEADCHAT_LOG_PATH")
    dry_run = os.getenv("LEADCHAT_DRY_RUN", "0").strip().lower() in {"1", "true", "yes"}

    return Config(
        account_id=account_id,
        surface_base_url=surface_base_url,
        state_db_path=state_db_path,
        journal_path=journal_path,
        idle_timeout_seconds=idle_timeout_seconds,
        cycle_delay_min_seconds=cycle_delay_min_seconds,
        cycle_delay_max_seconds=cycle_delay_max_seconds,
        burst_poll_seconds=burst_poll_seconds,
        burst_settle_checks=burst_settle_checks,
        burst_max_polls=burst_max_polls,
        extraction_retries=extraction_retries,
        extraction_retry_seconds=extraction_retry_seconds,
        max_inbox_contacts_per_cycle=max_inbox_contacts_per_cycle,
        max_cycles=max_cycles,
        inactive_days=inactive_days,
        services_path=services_path,
        persona_path=persona_path,
        do_not_reply_contacts=do_not_reply_contacts,
        openai_api_key=openai_api_key,
        openai_base_url=openai_base_url,
        openai_model=openai_model,
        openai_temperature=openai_temperature,
        fallback_reply=fallback_reply,
        alert_webhook_url=alert_webhook_url,
        log_level=log_level,
        log_path=log_path,
        dry_run=dry_run,
    )
