"""Shared fixtures for unit tests that need a real grant repository.

Repository tests run against the PostgreSQL test database and skip when
it is unavailable (see db_engine in the top-level conftest).
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.repositories.grant_repository import GrantRepository


@pytest.fixture
def repo(db_session: AsyncSession) -> GrantRepository:
    """GrantRepository bound to the test session."""
    return GrantRepository(db_session)
