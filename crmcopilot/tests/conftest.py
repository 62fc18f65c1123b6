from __future__ import annotations

import pytest

from crmcopilot.core.config import get_settings
from crmcopilot.tests.utils.fakes import TEST_SECRET


@pytest.fixture(autouse=True)
def encryption_secret(monkeypatch: pytest.MonkeyPatch):
    # Credentials are encrypted with a fixed secret so fixtures can decrypt them.
    monkeypatch.setenv("AI_ENCRYPTION_KEY", TEST_SECRET)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
