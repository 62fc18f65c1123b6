from __future__ import annotations

from crmcopilot.agent.parsing import (
    EMAIL_FALLBACK_SUBJECT,
    extract_json_object,
    normalize_analysis,
    normalize_email_draft,
    normalize_insights,
    parse_document_type,
)


def test_extract_json_handles_fences_and_prose() -> None:
    assert extract_json_object('{"a": 1}') == {"a": 1}
    assert extract_json_object('```json\n{"a": 2}\n```') == {"a": 2}
    assert extract_json_object('好的，以下是結果：\n{"a": 3}\n希望有幫助') == {"a": 3}
    assert extract_json_object("no json here") is None
    assert extract_json_object("[1, 2, 3]") is None


def test_email_draft_structured() -> None:
    draft = normalize_email_draft('```json\n{"subject": "合作提案", "body": "您好"}\n```', tone="formal")
    assert draft == {"subject": "合作提案", "body": "您好", "tone": "formal", "structured": True}


def test_email_draft_falls_back_to_raw_text() -> None:
    draft = normalize_email_draft("王經理您好，感謝您的來信。", tone="friendly")
    assert draft["subject"] == EMAIL_FALLBACK_SUBJECT
    assert draft["body"] == "王經理您好，感謝您的來信。"
    assert draft["structured"] is False


def test_insights_accept_camel_case_keys() -> None:
    text = (
        '{"summary": "整體穩定", "atRiskDeals": [{"dealId": "d1", "title": "ERP", '
        '"reason": "逾期", "suggestedAction": "致電"}], "keyInsights": ["提案轉換率偏低", null]}'
    )
    insights = normalize_insights(text)
    assert insights["summary"] == "整體穩定"
    assert insights["at_risk_deals"] == [
        {"deal_id": "d1", "title": "ERP", "reason": "逾期", "suggested_action": "致電"}
    ]
    assert insights["key_insights"] == ["提案轉換率偏低"]


def test_insights_fallback_keeps_raw_summary() -> None:
    insights = normalize_insights("本月管道健康。")
    assert insights == {"summary": "本月管道健康。", "at_risk_deals": [], "key_insights": [], "structured": False}


def test_analysis_clamps_confidence_and_sentiment() -> None:
    analysis = normalize_analysis(
        '{"summary": "合約", "entities": {"people": ["王"], "companies": "bad"}, '
        '"sentiment": "Ecstatic", "keyPoints": ["a"], "actionItems": ["b"], "confidence": 3}'
    )
    assert analysis["entities"] == {"people": ["王"], "companies": [], "dates": []}
    assert analysis["sentiment"] == "neutral"
    assert analysis["confidence"] == 1.0
    assert analysis["key_points"] == ["a"]
    assert analysis["action_items"] == ["b"]


def test_analysis_fallback() -> None:
    analysis = normalize_analysis("這是一份報價單。")
    assert analysis["summary"] == "這是一份報價單。"
    assert analysis["structured"] is False
    assert analysis["confidence"] is None


def test_document_type_parsing() -> None:
    assert parse_document_type(" Contract\n") == "contract"
    assert parse_document_type("類型：meeting_notes") == "meeting_notes"
    assert parse_document_type("不確定") is None
