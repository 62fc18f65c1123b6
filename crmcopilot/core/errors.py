from __future__ import annotations


class CopilotError(Exception):
    """Base error for the CRM copilot core."""

    code = "AI_ERROR"
    default_message = "AI 服務發生錯誤。請稍後再試。"

    def __init__(self, message: str | None = None) -> None:
        # The message is user facing; provider detail belongs in logs only.
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class RateLimitExceededError(CopilotError):
    """Identity exceeded its per-capability request ceiling."""

    code = "AI_RATE_LIMITED"
    default_message = "AI 請求過於頻繁，請稍後再試。"

    def __init__(self, message: str | None = None, *, retry_after_s: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s


class CapabilityDisabledError(CopilotError):
    """Capability is switched off for the tenant."""

    code = "AI_FEATURE_DISABLED"
    default_message = "此 AI 功能已停用。請聯繫管理員啟用此功能。"


class AINotConfiguredError(CapabilityDisabledError):
    """Tenant has no provider or no credential configured."""

    code = "AI_NOT_CONFIGURED"
    default_message = "AI 尚未設定。請到設定頁面配置 AI 供應商和 API 金鑰。"


class ProviderUnavailableError(CopilotError):
    """Resolver could not produce a usable model handle."""

    code = "AI_PROVIDER_UNAVAILABLE"
    default_message = "無法使用已設定的 AI 供應商。請到設定頁面檢查 AI 設定。"


class UpstreamError(CopilotError):
    """Model provider returned an error or an unusable response."""

    code = "AI_PROVIDER_ERROR"
    default_message = "AI 供應商暫時無法使用。請稍後再試。"

    def __init__(self, message: str | None = None, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AITimeoutError(CopilotError):
    """Deadline exceeded waiting on the model."""

    code = "AI_TIMEOUT"
    default_message = "AI 回應逾時。請稍後再試。"


class RetrievalNotConfiguredError(CopilotError):
    """Tenant has no embedding configuration; distinct from provider failure."""

    code = "AI_RETRIEVAL_NOT_CONFIGURED"
    default_message = "Embedding 尚未設定。請至「設定 → AI 功能」設定 Embedding 供應商。"


class RetrievalError(CopilotError):
    """Chunk index or embedding lookup failure."""

    code = "AI_RETRIEVAL_ERROR"
    default_message = "語意搜尋發生錯誤。"


class CredentialError(CopilotError):
    """Stored credential could not be encrypted or decrypted."""

    code = "AI_CREDENTIAL_ERROR"
    default_message = "API 金鑰解密失敗，請重新輸入。"


class InvalidRequestError(CopilotError):
    """Capability payload failed validation before any external call."""

    code = "AI_INVALID_REQUEST"
    default_message = "請求參數不正確。"


class DocumentUnavailableError(CopilotError):
    """Document is missing for the tenant or has no text to analyze."""

    code = "AI_DOCUMENT_UNAVAILABLE"
    default_message = "文件內容為空，無法分析。請輸入文字內容或上傳包含文字的檔案。"
