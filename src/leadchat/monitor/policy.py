from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import requests
from requests import exceptions as requests_exceptions

from .config import DEFAULT_PERSONA_HINT, DEFAULT_SERVICES_TEXT, Config
from .message_filters import get_display_name
from .models import POLICY_STAGES, EndIntent, LeadContext, Message, PolicyDecision, StageIntent

logger = logging.getLogger("leadchat.monitor")

END_MARKER = "[END_CONVERSATION]"
MAX_TRANSCRIPT_MESSAGES = 40
MAX_MESSAGE_CHARS = 600

PHONE_PATTERN = re.compile(r"(\+?216[\s-]?\d{2}[\s-]?\d{3}[\s-]?\d{3}|\b\d{8}\b)")
WHATSAPP_MARKERS = ("whatsapp", "whats app", "whats", "واتساب", "واتس")
INTEREST_KEYWORDS = (
    "interested",
    "price",
    "how much",
    "cost",
    "quote",
    "details",
    "قداش",
    "كم",
    "نحب نعرف",
    "نحب",
    "عندكم",
    "كيفاش",
    "وقتاش",
    "شنوة",
)
GARBLED_REPLY_PATTERNS = (
    re.compile(r"```"),
    re.compile(r"^\s*[\[{]"),
    re.compile(r"\b(reply|update_stage|end_conversation)\s*[:=]", re.IGNORECASE),
)


@dataclass
class PolicyContext:
    contact_name: str
    lead: Optional[LeadContext] = None
    services_text: str = DEFAULT_SERVICES_TEXT
    persona_text: str = DEFAULT_PERSONA_HINT


def load_services_text(path: Optional[Path]) -> str:
    if not path or not path.exists():
        return DEFAULT_SERVICES_TEXT
    try:
        return path.read_text(encoding="utf-8").strip() or DEFAULT_SERVICES_TEXT
    except Exception:
        return DEFAULT_SERVICES_TEXT


def load_persona_text(path: Optional[Path]) -> str:
    if not path or not path.exists():
        return DEFAULT_PERSONA_HINT
    try:
        return path.read_text(encoding="utf-8").strip() or DEFAULT_PERSONA_HINT
    except Exception:
        return DEFAULT_PERSONA_HINT


def _clip_text(value: Any, limit: int) -> str:
    text = str(value or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit].rstrip()


def format_transcript(transcript: Sequence[Message]) -> str:
    lines = []
    for message in list(transcript)[-MAX_TRANSCRIPT_MESSAGES:]:
        who = "You (sales rep)" if message.is_ours else "Prospect"
        lines.append(f"{who}: {_clip_text(message.text, MAX_MESSAGE_CHARS)}")
    return "\n".join(lines)


def build_reply_messages(transcript: Sequence[Message], context: PolicyContext) -> List[Dict[str, str]]:
    display_name = get_display_name(context.contact_name)
    already_greeted = any(m.is_ours for m in transcript)
    lead_section = ""
    if context.lead:
        lead = context.lead
        lead_section = (
            "\n\nOriginal request from the prospect:\n"
            f"What they posted in the group: \"{_clip_text(lead.post_text, 1200)}\"\n"
            f"Requested service: {lead.matched_service or 'unknown'}\n"
            f"Group: {lead.group_name or 'unknown'}\n"
        )
        if lead.posted_at:
            lead_section += f"Posted at: {lead.posted_at}\n"
        lead_section += "Mention that you saw their request if you have not done so yet."

    system = (
        f"{context.persona_text}\n\n"
        f"Our services:\n{context.services_text}"
        f"{lead_section}\n\n"
        "Return ONLY valid JSON with keys: reply (string), update_stage (object or null), "
        "end_conversation (object or null).\n"
        "update_stage has: stage (INTERESTED|CTA_WHATSAPP|CTA_PHONE|CONVERTED|LOST), reason (short English), "
        "contact_info (phone or WhatsApp number if the prospect gave one, else null).\n"
        "Use INTERESTED when they ask about prices or details, CTA_WHATSAPP / CTA_PHONE when they share "
        "a number, CONVERTED when they agree to the project, LOST when they decline.\n"
        "end_conversation has: reason. Use it on a clear goodbye or once a call / WhatsApp follow-up is "
        "confirmed; reply then holds the closing message (may be empty).\n"
        f"{'You already greeted them: do not greet again.' if already_greeted else 'Greet them once.'}\n"
        f"Their name: {display_name}"
    )
    user = (
        "Conversation so far:\n\n"
        f"{format_transcript(transcript) or '(no messages yet: open with a greeting)'}\n\n"
        "Write your next message."
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def _extract_first_fenced_block(text: str) -> Optional[str]:
    match = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL | re.IGNORECASE)
    if not match:
        return None
    return match.group(1).strip() or None


def _extract_first_balanced_json_object(text: str) -> Optional[str]:
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : idx + 1]
        start = text.find("{", start + 1)
    return None


def parse_json_object_lenient(text: str) -> Dict[str, Any]:
    raw = str(text or "").lstrip("\ufeff").strip()
    if not raw:
        raise RuntimeError("Policy returned empty text response")

    # 1) strict parse
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass

    # 2) fenced block parse
    fenced = _extract_first_fenced_block(raw)
    if fenced:
        try:
            parsed = json.loads(fenced)
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass

    # 3) first balanced object parse
    balanced = _extract_first_balanced_json_object(raw)
    if balanced:
        try:
            parsed = json.loads(balanced)
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass

    preview = _clip_text(raw.replace("\n", " "), 320)
    raise RuntimeError(f"Policy returned non-JSON text (preview={preview})")


def call_openai(cfg: Config, messages: List[Dict[str, str]]) -> Dict[str, Any]:
    if not cfg.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY not set")

    url = f"{cfg.openai_base_url}/chat/completions"
    headers = {
        "Authorization": f"Bearer {cfg.openai_api_key}",
        "Content-Type": "application/json",
    }
    payload = {
        "model": cfg.openai_model,
        "messages": messages,
        "temperature": cfg.openai_temperature,
        "response_format": {"type": "json_object"},
    }
    prompt_chars = sum(len(m.get("content") or "") for m in messages)
    logger.info(
        "Policy request model=%s messages=%s prompt_chars=%s",
        cfg.openai_model,
        len(messages),
        prompt_chars,
    )
    try:
        resp = requests.post(url, headers=headers, data=json.dumps(payload), timeout=60)
    except requests_exceptions.RequestException as e:
        raise RuntimeError(f"Policy request failed: {e}") from e
    if resp.status_code >= 400:
        raise RuntimeError(f"OpenAI error {resp.status_code}: {resp.text}")

    data = resp.json()
    content = data["choices"][0]["message"]["content"]
    usage = data.get("usage") or {}
    logger.info(
        "Policy response model=%s prompt_tokens=%s completion_tokens=%s",
        cfg.openai_model,
        usage.get("prompt_tokens"),
        usage.get("completion_tokens"),
    )
    return parse_json_object_lenient(content)


def should_end_conversation(reply: str) -> bool:
    return END_MARKER in (reply or "")


def clean_reply(reply: str) -> str:
    return (reply or "").replace(END_MARKER, "").strip()


def looks_garbled_reply(reply: str) -> bool:
    return any(p.search(reply) for p in GARBLED_REPLY_PATTERNS)


def _normalize_stage(value: Any) -> Optional[str]:
    stage = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
    return stage if stage in POLICY_STAGES else None


def parse_policy_decision(payload: Dict[str, Any], fallback_reply: str) -> PolicyDecision:
    """Map a model JSON object onto a decision.

    A decision with neither a reply nor an intent is rejected so the caller can
    fall back; an empty reply alongside an intent is a valid decision.
    """
    raw_reply = ""
    for key in ("reply", "reply_text", "message", "content"):
        if isinstance(payload.get(key), str):
            raw_reply = payload[key]
            break

    advance_stage = None
    stage_raw = payload.get("update_stage") or payload.get("updateLeadStage")
    if isinstance(stage_raw, dict):
        stage = _normalize_stage(stage_raw.get("stage"))
        if stage:
            info = stage_raw.get("contact_info") or stage_raw.get("contactInfo")
            advance_stage = StageIntent(
                stage=stage,
                reason=str(stage_raw.get("reason") or "").strip(),
                extracted_info=str(info).strip() if info else None,
            )
        else:
            logger.warning("Policy stage ignored stage=%r", stage_raw.get("stage"))

    end = None
    end_raw = payload.get("end_conversation") or payload.get("endConversation")
    if isinstance(end_raw, dict):
        end = EndIntent(reason=str(end_raw.get("reason") or "ai_ended").strip() or "ai_ended")
    elif end_raw is True:
        end = EndIntent()
    if end is None and should_end_conversation(raw_reply):
        end = EndIntent(reason="AI used END_CONVERSATION marker")

    reply = clean_reply(raw_reply)
    if reply and looks_garbled_reply(reply):
        logger.warning("Policy reply looked garbled; using fallback reply preview=%r", reply[:80])
        reply = fallback_reply
    if not reply and advance_stage is None and end is None:
        raise ValueError("Policy decision carried no reply and no intents")
    return PolicyDecision(reply_text=reply, advance_stage=advance_stage, end=end)


def extract_contact_info(text: str) -> Dict[str, str]:
    match = PHONE_PATTERN.search(text or "")
    if not match:
        return {}
    number = re.sub(r"[\s-]", "", match.group(1))
    lower = (text or "").lower()
    if any(marker in lower for marker in WHATSAPP_MARKERS):
        return {"whatsapp": number}
    return {"phone": number}


def detect_interest(transcript: Sequence[Message]) -> bool:
    for message in transcript:
        if message.is_ours:
            continue
        lower = message.text.lower()
        if any(keyword in lower for keyword in INTEREST_KEYWORDS):
            return True
    return False


def heuristic_stage_intent(transcript: Sequence[Message]) -> Optional[StageIntent]:
    intent = None
    for message in transcript:
        if message.is_ours:
            continue
        info = extract_contact_info(message.text)
        if info.get("whatsapp"):
            intent = StageIntent(stage="CTA_WHATSAPP", reason="whatsapp number shared", extracted_info=info["whatsapp"])
        elif info.get("phone"):
            intent = StageIntent(stage="CTA_PHONE", reason="phone number shared", extracted_info=info["phone"])
    if intent is None and detect_interest(transcript):
        intent = StageIntent(stage="INTERESTED", reason="interest keywords")
    return intent


def fallback_decision(cfg: Config, transcript: Sequence[Message]) -> PolicyDecision:
    return PolicyDecision(
        reply_text=cfg.fallback_reply,
        advance_stage=heuristic_stage_intent(transcript),
        source="fallback",
    )


def invoke_policy(cfg: Config, transcript: Sequence[Message], context: PolicyContext) -> PolicyDecision:
    messages = build_reply_messages(transcript, context)
    try:
        payload = call_openai(cfg, messages)
        decision = parse_policy_decision(payload, fallback_reply=cfg.fallback_reply)
    except (RuntimeError, ValueError, KeyError, IndexError, TypeError) as e:
        logger.warning("Policy failed contact=%s error=%s; using fallback", context.contact_name, e)
        return fallback_decision(cfg, transcript)
    if decision.advance_stage:
        logger.info(
            "Policy intent contact=%s stage=%s reason=%s",
            context.contact_name,
            decision.advance_stage.stage,
            decision.advance_stage.reason,
        )
    if decision.end:
        logger.info("Policy intent contact=%s end reason=%s", context.contact_name, decision.end.reason)
    return decision
