from __future__ import annotations

import pytest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from unistatus.domain.models import Base
from unistatus.persistence.db import engine


_schema_state: dict[str, str | None] = {"error": None, "checked": None}


@pytest.fixture(autouse=True)
async def require_database() -> None:
    # Integration tests need a reachable Postgres; create the schema once per session.
    if _schema_state["checked"] is None:
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                await conn.run_sync(Base.metadata.create_all)
        except (OSError, SQLAlchemyError) as exc:
            _schema_state["error"] = str(exc)
        _schema_state["checked"] = "yes"
    if _schema_state["error"] is not None:
        pytest.skip(f"database unavailable: {_schema_state['error']}")
