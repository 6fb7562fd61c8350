from unittest.mock import AsyncMock, MagicMock

import pytest

from models.types import ProgressEvent


@pytest.fixture
def mock_supabase():
    """Mock Supabase client for testing. Query builders chain back to the client."""
    client = MagicMock()
    client.table = MagicMock(return_value=client)
    client.select = MagicMock(return_value=client)
    client.insert = MagicMock(return_value=client)
    client.update = MagicMock(return_value=client)
    client.eq = MagicMock(return_value=client)
    client.ilike = MagicMock(return_value=client)
    client.limit = MagicMock(return_value=client)
    client.execute = MagicMock(return_value=MagicMock(data=[], count=0))
    return client


@pytest.fixture
def recorded_events():
    """A progress sink that records every event it receives."""
    events: list[ProgressEvent] = []

    async def sink(event: ProgressEvent) -> None:
        events.append(event)

    sink.events = events  # type: ignore[attr-defined]
    return sink


@pytest.fixture
def mock_image_chain():
    chain = AsyncMock()
    chain.find_web_image = AsyncMock(return_value=None)
    chain.generate_image = AsyncMock(return_value=None)
    chain.store = AsyncMock(return_value=None)
    return chain
