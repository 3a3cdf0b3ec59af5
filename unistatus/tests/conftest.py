from __future__ import annotations

import pytest

from unistatus.core.config import get_settings
from unistatus.persistence.db import engine
from unistatus.services.entitlements import reset_entitlements_cache


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_caches() -> None:
    # Entitlements and settings are cached per process; tests mutate both.
    reset_entitlements_cache()
    yield
    reset_entitlements_cache()
    get_settings.cache_clear()
