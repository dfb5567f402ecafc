from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import requests
from requests import exceptions as requests_exceptions

from .store import ContactStore

logger = logging.getLogger("leadchat.monitor")


def notify_session_problem(
    store: ContactStore,
    account_id: str,
    kind: str,
    message: str,
    webhook_url: Optional[str] = None,
) -> None:
    """Surface a session/auth problem to the operator.

    The notification row is always written; the webhook is best effort.
    """
    store.record_notification(account_id, kind, message)
    logger.error("Session problem account=%s kind=%s message=%s", account_id, kind, message)
    if not webhook_url:
        return
    payload = {
        "account_id": account_id,
        "kind": kind,
        "message": message,
        "ts": datetime.now(timezone.utc).isoformat(),
    }
    try:
        resp = requests.post(webhook_url, json=payload, timeout=10)
    except requests_exceptions.RequestException as e:
        logger.warning("Alert webhook failed account=%s error=%s", account_id, e)
        return
    if resp.status_code >= 400:
        logger.warning("Alert webhook rejected account=%s status=%s", account_id, resp.status_code)
