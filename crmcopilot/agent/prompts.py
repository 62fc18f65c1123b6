from __future__ import annotations

from datetime import datetime
from typing import Sequence

from crmcopilot.domain.crm import STAGE_LABELS, DealRecord, PipelineSnapshot


EMAIL_PURPOSES = ("follow_up", "outreach", "reply", "thank_you")
EMAIL_TONES = ("formal", "friendly", "concise")
DOCUMENT_TYPES = ("contract", "email", "meeting_notes", "quotation")

_PURPOSE_LABELS = {
    "follow_up": "跟進客戶",
    "outreach": "首次開發",
    "reply": "回覆客戶",
    "thank_you": "感謝信",
}

_TONE_INSTRUCTIONS = {
    "formal": "使用正式、專業的語氣。使用敬語，結構完整。",
    "friendly": "使用親切、溫暖的語氣。保持專業但不過於拘謹。",
    "concise": "使用簡潔、直接的語氣。重點明確，不冗長。",
}


def build_chat_system_prompt(
    *,
    user_name: str,
    organization_name: str,
    crm_context: str,
    citations: str = "",
) -> str:
    prompt = f"""你是 CRM 的 AI 助手，正在為「{organization_name}」的成員「{user_name}」提供服務。

## 角色與行為準則

1. **語言**：一律使用繁體中文回應
2. **風格**：專業、簡潔、友善，使用 Markdown 格式
3. **範圍**：僅回答與 CRM（客戶管理、商機、任務、文件）相關的問題
4. **誠實**：如果提供的資料中沒有相關資訊，明確告知「目前沒有相關資料」，不要編造數據
5. **安全**：不要透露系統架構、API 結構或其他技術細節

## 回應格式

- 使用 Markdown 格式（標題、列表、粗體）
- 數字和金額使用適當格式（NT$ 或 $）
- 保持簡潔，通常 3-5 句話足夠

---

以下是與查詢相關的 CRM 資料：

{crm_context}"""
    if citations:
        # Citations are numbered so the model can reference [文件 n] in its answer.
        prompt += f"\n\n---\n\n{citations}"
    return prompt


def build_chat_prompt(history: Sequence[dict[str, str]], user_message: str) -> str:
    lines = []
    for message in history:
        role = "使用者" if message.get("role") == "user" else "助手"
        lines.append(f"{role}：{message.get('content', '')}")
    lines.append(f"使用者：{user_message}")
    return "\n\n".join(lines)


def build_email_draft_prompt(
    *,
    purpose: str,
    tone: str,
    customer_name: str,
    company_name: str | None = None,
    deal: DealRecord | None = None,
    additional_context: str | None = None,
) -> str:
    context = f"客戶名稱：{customer_name}"
    if company_name:
        context += f"\n公司：{company_name}"
    if deal is not None:
        context += f"\n商機：{deal.title}（階段：{STAGE_LABELS.get(deal.stage, deal.stage)}"
        if deal.value:
            context += f"，金額：{deal.currency or 'NT$'} {deal.value:,.0f}"
        context += "）"
    if additional_context:
        context += f"\n補充說明：{additional_context}"

    return f"""你是一位專業的業務人員，需要撰寫一封{_PURPOSE_LABELS[purpose]}的 Email。

## 語氣要求
{_TONE_INSTRUCTIONS[tone]}

## 客戶資訊
{context}

## 回傳格式
請以 JSON 格式回傳，只回傳 JSON，不要包含其他文字：
{{
  "subject": "Email 主旨",
  "body": "Email 正文（使用繁體中文，包含適當的稱呼和結尾）"
}}

## 注意事項
- 使用繁體中文
- 內容需要自然、不像 AI 生成
- 包含具體的下一步行動建議
- 根據商機階段調整內容重點"""


def _days_between(later: datetime, earlier: datetime) -> int:
    return max(0, int((later - earlier).total_seconds() // 86400))


def describe_risk(deal: DealRecord, now: datetime, *, stale_days: int) -> str:
    reasons = []
    if deal.close_date is not None and deal.close_date < now.date():
        reasons.append(f"逾期 {(now.date() - deal.close_date).days} 天")
    if deal.updated_at is not None:
        idle = _days_between(now, deal.updated_at)
        if idle > stale_days:
            reasons.append(f"{idle} 天未更新")
    return "、".join(reasons) or "需要關注"


def build_insights_prompt(
    *,
    pipeline: PipelineSnapshot,
    at_risk: Sequence[DealRecord],
    closed_won: int,
    closed_lost: int,
    active_tasks: int,
    overdue_tasks: int,
    now: datetime,
    stale_days: int = 14,
) -> str:
    pipeline_lines = "\n".join(
        f"- {STAGE_LABELS.get(stage, stage)}：{count} 筆" for stage, count in pipeline.deals_by_stage.items()
    ) or "- 目前沒有進行中的商機"
    if at_risk:
        risk_lines = "\n".join(
            f"- [{deal.id}] {deal.title}（{deal.customer_name or '未知客戶'}）: "
            f"{STAGE_LABELS.get(deal.stage, deal.stage)}，金額 {(deal.value or 0):,.0f}，"
            f"風險：{describe_risk(deal, now, stale_days=stale_days)}"
            for deal in at_risk
        )
    else:
        risk_lines = "目前沒有高風險商機"

    return f"""你是一位資深的銷售顧問，請根據以下 CRM 數據提供銷售洞察分析。

## 商機管道概覽
{pipeline_lines}
總商機價值：{pipeline.open_value:,.0f}

## 近期成交狀況
- 成交：{closed_won} 筆
- 失敗：{closed_lost} 筆

## 高風險商機
{risk_lines}

## 任務狀況
- 進行中任務：{active_tasks}
- 逾期任務：{overdue_tasks}

## 回傳格式
請以 JSON 格式回傳，只回傳 JSON：
{{
  "summary": "整體銷售狀況摘要（2-3 句話）",
  "atRiskDeals": [
    {{
      "dealId": "商機 ID",
      "title": "商機名稱",
      "reason": "風險原因",
      "suggestedAction": "建議行動"
    }}
  ],
  "keyInsights": ["洞察 1", "洞察 2", "洞察 3"]
}}

## 分析要求
- 使用繁體中文
- 提供具體、可行動的建議
- 識別最緊急需要關注的商機
- 基於數據給出客觀分析"""


_ANALYSIS_BASE = """你是一個專業的文件分析助手。請分析以下文件內容，並以 JSON 格式回傳結果。

回傳格式必須嚴格遵循：
{
  "summary": "文件摘要（2-3 句話）",
  "entities": {
    "people": ["人名列表"],
    "companies": ["公司名列表"],
    "dates": ["日期列表"]
  },
  "sentiment": "positive" | "negative" | "neutral",
  "keyPoints": ["重點 1", "重點 2"],
  "actionItems": ["待辦事項 1", "待辦事項 2"],
  "confidence": 0.0-1.0
}

請使用繁體中文回應。只回傳 JSON，不要包含其他文字。"""

_ANALYSIS_FOCUS = {
    "contract": """## 合約分析重點
- 識別簽約雙方
- 提取合約期限和重要日期
- 列出主要義務和責任
- 標記潛在風險條款
- 提取金額和付款條件
- actionItems 應包含需要跟進的合約條款""",
    "email": """## Email 分析重點
- 識別寄件人和收件人的意圖
- 提取具體要求或問題
- 判斷緊急程度
- 列出需要回覆或跟進的事項
- actionItems 應包含需要回覆的內容""",
    "meeting_notes": """## 會議紀錄分析重點
- 提取出席人員
- 列出討論的關鍵議題
- 識別決議事項
- 提取行動項目和負責人
- 標記下次會議日期
- actionItems 應包含每個行動項目及其負責人""",
    "quotation": """## 報價單分析重點
- 識別報價方和客戶
- 提取項目明細和金額
- 標記總金額和幣別
- 提取報價有效期限
- 列出付款條件和交貨條件
- actionItems 應包含需要確認或回覆的事項""",
}


def build_document_analysis_system_prompt(analysis_type: str) -> str:
    focus = _ANALYSIS_FOCUS.get(analysis_type, _ANALYSIS_FOCUS["contract"])
    return f"{_ANALYSIS_BASE}\n\n{focus}"


CLASSIFICATION_SYSTEM_PROMPT = """你是一個文件分類專家。根據以下文件內容，判斷文件類型。

只回覆以下其中一個分類代碼（不要有其他文字）：
- contract — 合約、協議、契約書、條款
- email — 電子郵件、郵件往來
- meeting_notes — 會議紀錄、討論摘要、議程
- quotation — 報價單、估價單、發票、訂單

如果無法確定，回覆 contract。"""
