import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import requests
from requests import exceptions as requests_exceptions


SURFACE_BASE_URL = "http://127.0.0.1:8787/api/v1"
SURFACE_BASE_ENV = "LEADCHAT_SURFACE_BASE_URL"
CREDENTIALS_PATH = Path.home() / ".config" / "leadchat" / "credentials.json"

logger = logging.getLogger("leadchat.monitor")


class SurfaceSessionError(Exception):
    """The account behind the surface is logged out, checkpointed or banned."""


class SurfaceError(Exception):
    pass


def normalize_sender(value: Any) -> str:
    text = str(value or "").strip().lower()
    if text in {"ours", "us", "me", "self", "outbound"}:
        return "ours"
    return "theirs"


class MessageSurface(Protocol):
    def ping(self) -> bool:
        ...

    def list_unread_contacts(self) -> List[Dict[str, Any]]:
        ...

    def open_contact(self, name: str) -> bool:
        ...

    def read_transcript(self, name: str) -> Optional[List[Dict[str, str]]]:
        ...

    def send_message(self, text: str) -> bool:
        ...


@dataclass
class SurfaceCredentials:
    api_key: str
    account_id: Optional[str] = None
    source: str = "unknown"

    @classmethod
    def load(cls) -> "SurfaceCredentials":
        """Load worker credentials from env or ~/.config/leadchat/credentials.json.

        Priority:
        1. LEADCHAT_SURFACE_API_KEY env var
        2. credentials.json file

        A worker bound to localhost may run without a key; an empty key is allowed.
        """
        api_key = os.getenv("LEADCHAT_SURFACE_API_KEY")
        account_id = os.getenv("LEADCHAT_ACCOUNT_ID")
        source = "env:LEADCHAT_SURFACE_API_KEY"

        if not api_key and CREDENTIALS_PATH.exists():
            with CREDENTIALS_PATH.open("r", encoding="utf-8") as f:
                data = json.load(f)
            api_key = data.get("api_key")
            account_id = account_id or data.get("account_id")
            source = f"file:{CREDENTIALS_PATH}"

        return cls(api_key=str(api_key or "").strip(), account_id=account_id, source=source)


class SurfaceClient:
    """JSON/HTTP client for the browser worker that drives the messenger UI.

    The worker owns the page: it scrapes the open conversation into an ordered
    message list and types replies. This client only relays those operations.
    Reads and sends are transient-failure tolerant (None / False); only session
    problems raise.
    """

    def __init__(
        self,
        credentials: Optional[SurfaceCredentials] = None,
        base_url: Optional[str] = None,
        timeout: int = 45,
    ):
        self.credentials = credentials or SurfaceCredentials.load()
        raw_base = base_url or os.getenv(SURFACE_BASE_ENV) or SURFACE_BASE_URL
        self.base_url = str(raw_base).strip().rstrip("/")
        self.timeout = timeout

    @property
    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.credentials.api_key:
            headers["Authorization"] = f"Bearer {self.credentials.api_key}"
        return headers

    def _url(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.base_url}/{path}"

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            if method == "GET":
                resp = requests.get(
                    self._url(path),
                    headers=self._headers,
                    params=params,
                    timeout=self.timeout,
                )
            else:
                resp = requests.post(
                    self._url(path),
                    headers=self._headers,
                    data=json.dumps(payload or {}),
                    timeout=self.timeout,
                )
        except requests_exceptions.Timeout as e:
            raise SurfaceError(f"Timed out while contacting the surface worker for /{path}.") from e
        except requests_exceptions.ConnectionError as e:
            raise SurfaceError(f"Surface worker unreachable for /{path}: {e}") from e

        if resp.status_code in {401, 403}:
            try:
                data = resp.json()
            except Exception:
                data = {}
            message = data.get("error") or data.get("hint") or "Authentication required"
            raise SurfaceSessionError(f"Surface auth error {resp.status_code}: {message}")

        if resp.status_code >= 400:
            try:
                data = resp.json()
                message = data.get("error") or resp.text
            except Exception:
                message = resp.text
            raise SurfaceError(f"Surface error {resp.status_code}: {message}")

        try:
            data = resp.json()
        except Exception as e:
            raise SurfaceError(f"Surface returned non-JSON body for /{path}") from e
        if not isinstance(data, dict):
            raise SurfaceError(f"Surface returned unexpected payload for /{path}")
        if data.get("logged_in") is False:
            reason = data.get("reason") or "logged_out"
            raise SurfaceSessionError(f"Surface session lost: {reason}")
        return data

    def ping(self) -> bool:
        try:
            data = self._request("GET", "session")
        except SurfaceError as e:
            logger.warning("Surface ping failed error=%s", e)
            return False
        return bool(data.get("alive", True))

    def list_unread_contacts(self) -> List[Dict[str, Any]]:
        try:
            data = self._request("GET", "inbox/unread")
        except SurfaceError as e:
            logger.warning("Inbox read failed error=%s", e)
            return []
        out: List[Dict[str, Any]] = []
        for item in data.get("contacts") or []:
            if not isinstance(item, dict):
                continue
            name = str(item.get("name") or "").strip()
            if not name:
                continue
            out.append(
                {
                    "name": name,
                    "preview_text": str(item.get("preview_text") or item.get("previewText") or ""),
                    "preview_is_ours": bool(item.get("preview_is_ours") or item.get("previewIsOurs")),
                }
            )
        return out

    def open_contact(self, name: str) -> bool:
        if not name.strip():
            raise ValueError("name must be provided.")
        try:
            data = self._request("POST", "conversations/open", payload={"name": name})
        except SurfaceError as e:
            logger.warning("Open conversation failed contact=%s error=%s", name, e)
            return False
        return bool(data.get("opened"))

    def read_transcript(self, name: str) -> Optional[List[Dict[str, str]]]:
        try:
            data = self._request("GET", "conversations/transcript", params={"name": name})
        except SurfaceError as e:
            logger.warning("Transcript read failed contact=%s error=%s", name, e)
            return None
        messages = data.get("messages")
        if not isinstance(messages, list):
            return None
        out: List[Dict[str, str]] = []
        for item in messages:
            if not isinstance(item, dict):
                continue
            out.append({"sender": normalize_sender(item.get("sender")), "text": str(item.get("text") or "")})
        return out

    def send_message(self, text: str) -> bool:
        if not text.strip():
            raise ValueError("text must be provided.")
        try:
            data = self._request("POST", "messages/send", payload={"text": text})
        except SurfaceError as e:
            logger.warning("Send failed error=%s", e)
            return False
        return bool(data.get("sent"))
