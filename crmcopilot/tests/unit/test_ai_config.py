from __future__ import annotations

import json

import pytest

from crmcopilot.core.errors import AINotConfiguredError, CapabilityDisabledError, InvalidRequestError
from crmcopilot.domain.ai import AIConfig
from crmcopilot.persistence.repos.ai_settings import (
    KEY_API_KEY,
    KEY_FEATURES,
    KEY_MODEL,
    KEY_OLLAMA_ENDPOINT,
    KEY_PROVIDER,
)
from crmcopilot.services.ai_config import (
    AIConfigUpdate,
    describe_config,
    is_configured,
    parse_ai_config,
    parse_feature_map,
    require_capability,
    settings_rows,
)
from crmcopilot.services.credentials import decrypt_credential, encrypt_credential


def test_feature_map_defaults_and_overrides() -> None:
    assert parse_feature_map(None)["rag"] is False
    assert parse_feature_map(None)["chat"] is True
    features = parse_feature_map(json.dumps({"chat": False, "rag": True, "unknown": True}))
    assert features["chat"] is False
    assert features["rag"] is True
    assert "unknown" not in features


def test_corrupt_feature_map_falls_back_to_defaults() -> None:
    assert parse_feature_map("{not json") == parse_feature_map(None)
    assert parse_feature_map("[1, 2]") == parse_feature_map(None)


def test_parse_config_treats_blank_values_as_missing() -> None:
    config = parse_ai_config(
        "t1",
        {KEY_PROVIDER: "openai", KEY_API_KEY: "enc", KEY_MODEL: "", KEY_OLLAMA_ENDPOINT: ""},
    )
    assert config.provider == "openai"
    assert config.credential_reference == "enc"
    assert config.model_name is None
    assert config.ollama_endpoint is None
    assert config.is_enabled("chat")
    assert not config.is_enabled("rag")


def test_ollama_is_configured_without_key() -> None:
    assert is_configured(AIConfig(tenant_id="t1", provider="ollama"))
    assert not is_configured(AIConfig(tenant_id="t1", provider="openai"))
    assert not is_configured(AIConfig(tenant_id="t1", provider=None, credential_reference="x"))


def test_require_capability_fails_closed() -> None:
    with pytest.raises(AINotConfiguredError):
        require_capability(AIConfig(tenant_id="t1", provider=None), "chat")

    disabled = AIConfig(
        tenant_id="t1",
        provider="openai",
        credential_reference="enc",
        enabled_capabilities=frozenset({"chat"}),
    )
    require_capability(disabled, "chat")
    with pytest.raises(CapabilityDisabledError) as excinfo:
        require_capability(disabled, "insights")
    assert excinfo.value.code == "AI_FEATURE_DISABLED"
    assert "銷售洞察" in excinfo.value.message


def test_describe_config_masks_the_key() -> None:
    config = AIConfig(
        tenant_id="t1",
        provider="openai",
        credential_reference=encrypt_credential("sk-live-abcdefghijkl"),
        enabled_capabilities=frozenset({"chat"}),
    )
    view = describe_config(config, default_model="gpt-4o-mini")
    assert view is not None
    assert view["masked_api_key"] == "sk-****...ijkl"
    assert view["model"] == "gpt-4o-mini"
    assert view["features"]["chat"] is True
    assert "sk-live-abcdefghijkl" not in json.dumps(view)


def test_describe_config_reports_undecryptable_key() -> None:
    config = AIConfig(tenant_id="t1", provider="openai", credential_reference="garbage")
    view = describe_config(config)
    assert view is not None
    assert view["masked_api_key"].startswith("****")


def test_describe_config_without_provider_is_none() -> None:
    assert describe_config(AIConfig(tenant_id="t1", provider=None)) is None


def test_settings_rows_encrypt_key_and_merge_features() -> None:
    rows = settings_rows(
        AIConfigUpdate(provider="anthropic", api_key="sk-ant-123456789", features={"rag": True, "bogus": True})
    )
    assert rows[KEY_PROVIDER] == "anthropic"
    assert decrypt_credential(rows[KEY_API_KEY]) == "sk-ant-123456789"
    features = json.loads(rows[KEY_FEATURES])
    assert features["rag"] is True
    assert "bogus" not in features


def test_settings_rows_keep_stored_key_when_omitted() -> None:
    rows = settings_rows(AIConfigUpdate(provider="openai"))
    assert KEY_API_KEY not in rows
    assert KEY_FEATURES not in rows


def test_settings_rows_reject_unknown_provider() -> None:
    with pytest.raises(InvalidRequestError):
        settings_rows(AIConfigUpdate(provider="mystery"))
