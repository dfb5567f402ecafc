from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .models import ConversationHandled


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clip_text(value: Any, limit: int) -> str:
    text = str(value or "").strip()
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit].rstrip()


def append_conversation_journal(
    path: Path,
    *,
    account_id: str,
    handled: ConversationHandled,
    trigger_digest: Optional[str] = None,
    source: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    row: Dict[str, Any] = {
        "ts": _utc_now_iso(),
        "account_id": account_id,
        "contact_name": _clip_text(handled.contact_name, 200),
        "messages_read": handled.messages_read,
        "reply_sent": handled.reply_sent,
        "reply_text": _clip_text(handled.reply_text, 2000),
    }
    if handled.stage_updated:
        row["stage_updated"] = handled.stage_updated
    if handled.extracted_phone:
        row["extracted_phone"] = handled.extracted_phone
    if handled.extracted_whatsapp:
        row["extracted_whatsapp"] = handled.extracted_whatsapp
    if trigger_digest:
        row["trigger_digest"] = trigger_digest
    if source:
        row["source"] = source
    if isinstance(meta, dict) and meta:
        row["meta"] = meta
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(row, ensure_ascii=False) + "\n")


def read_conversation_journal(path: Path, limit: int = 50):
    if not path.exists():
        return []
    rows = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            rows.append(obj)
    return rows[-limit:] if limit > 0 else rows
