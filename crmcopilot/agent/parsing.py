from __future__ import annotations

import json
import re
from typing import Any

from crmcopilot.agent.prompts import DOCUMENT_TYPES


EMAIL_FALLBACK_SUBJECT = "（AI 未回傳標準格式）"
_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_SENTIMENTS = ("positive", "negative", "neutral")


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Best-effort extraction of one JSON object from model output.

    Accepts a bare object, an object inside a Markdown code fence, or an
    object surrounded by prose. Returns None when nothing parses.
    """
    candidates = [text.strip()]
    fenced = _FENCE_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


def normalize_email_draft(text: str, *, tone: str) -> dict[str, Any]:
    parsed = extract_json_object(text)
    if parsed is None or not isinstance(parsed.get("body"), str):
        # Keep the model's answer visible even when it ignored the format.
        return {"subject": EMAIL_FALLBACK_SUBJECT, "body": text, "tone": tone, "structured": False}
    return {
        "subject": str(parsed.get("subject") or ""),
        "body": parsed["body"],
        "tone": tone,
        "structured": True,
    }


def _risk_items(value: Any) -> list[dict[str, str]]:
    if not isinstance(value, list):
        return []
    items = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        items.append(
            {
                "deal_id": str(entry.get("dealId") or entry.get("deal_id") or ""),
                "title": str(entry.get("title") or ""),
                "reason": str(entry.get("reason") or ""),
                "suggested_action": str(entry.get("suggestedAction") or entry.get("suggested_action") or ""),
            }
        )
    return items


def normalize_insights(text: str) -> dict[str, Any]:
    parsed = extract_json_object(text)
    if parsed is None:
        return {"summary": text, "at_risk_deals": [], "key_insights": [], "structured": False}
    return {
        "summary": str(parsed.get("summary") or ""),
        "at_risk_deals": _risk_items(parsed.get("atRiskDeals", parsed.get("at_risk_deals"))),
        "key_insights": _str_list(parsed.get("keyInsights", parsed.get("key_insights"))),
        "structured": True,
    }


def _confidence(value: Any) -> float | None:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(1.0, score))


def normalize_analysis(text: str) -> dict[str, Any]:
    parsed = extract_json_object(text)
    if parsed is None:
        return {
            "summary": text,
            "entities": {"people": [], "companies": [], "dates": []},
            "sentiment": "neutral",
            "key_points": [],
            "action_items": [],
            "confidence": None,
            "structured": False,
        }
    entities = parsed.get("entities") if isinstance(parsed.get("entities"), dict) else {}
    sentiment = str(parsed.get("sentiment") or "neutral").lower()
    return {
        "summary": str(parsed.get("summary") or ""),
        "entities": {
            "people": _str_list(entities.get("people")),
            "companies": _str_list(entities.get("companies")),
            "dates": _str_list(entities.get("dates")),
        },
        "sentiment": sentiment if sentiment in _SENTIMENTS else "neutral",
        "key_points": _str_list(parsed.get("keyPoints", parsed.get("key_points"))),
        "action_items": _str_list(parsed.get("actionItems", parsed.get("action_items"))),
        "confidence": _confidence(parsed.get("confidence")),
        "structured": True,
    }


def parse_document_type(text: str) -> str | None:
    response = text.strip().lower()
    if response in DOCUMENT_TYPES:
        return response
    # Longest first so "meeting_notes" wins over a stray "email" mention.
    for doc_type in sorted(DOCUMENT_TYPES, key=len, reverse=True):
        if doc_type in response:
            return doc_type
    return None
