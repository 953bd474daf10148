import asyncio
import datetime
from datetime import timezone

import pytest

from conftest import FAMILY, HOME, HOME_SERVER, make_photo
from truphotos.errors import InvalidStateError, NetworkError, RequestTimeoutError
from truphotos.models import CatalogState
from truphotos.syncer import CatalogSyncEngine


def photos(count, start=0):
    base = datetime.datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
    return [make_photo(f"p{i}", base - datetime.timedelta(hours=i)) for i in range(start, start + count)]


@pytest.fixture
def engine(manager, client):
    async def scenario():
        await manager.restore()
        await manager.login(HOME, "alice", "secret")
        await manager.select_server(HOME_SERVER)
        await manager.select_library(FAMILY)
    asyncio.run(scenario())
    client.catalog = photos(25)
    return CatalogSyncEngine(manager, client, page_size=10)


def assert_consistent(state):
    assert len(state.items) <= state.total_count
    assert state.has_more == (len(state.items) < state.total_count)


def test_initial_state_is_empty(engine):
    assert engine.state == CatalogState()
    assert asyncio.run(engine.load_more()) is False


def test_load_initial_fetches_first_page(engine, client):
    state = asyncio.run(engine.load_initial())

    assert [p.id for p in state.items] == [f"p{i}" for i in range(10)]
    assert state.total_count == 25
    assert state.has_more is True
    assert client.calls[-1] == ("list_photos", FAMILY.id, 0, 10)
    assert_consistent(state)


def test_load_more_appends_in_server_order(engine, client):
    asyncio.run(engine.load_initial())
    assert asyncio.run(engine.load_more()) is True
    assert asyncio.run(engine.load_more()) is True

    state = engine.state
    assert [p.id for p in state.items] == [f"p{i}" for i in range(25)]
    assert state.has_more is False
    assert [call[2] for call in client.calls if call[0] == "list_photos"] == [0, 10, 20]
    assert_consistent(state)
    assert asyncio.run(engine.load_more()) is False


def test_load_initial_replaces_previous_items(engine, client):
    asyncio.run(engine.sync_all())
    client.catalog = photos(3, start=100)

    state = asyncio.run(engine.load_initial())
    assert [p.id for p in state.items] == ["p100", "p101", "p102"]
    assert state.total_count == 3
    assert state.has_more is False


def test_sync_all_walks_every_page(engine, client):
    state = asyncio.run(engine.sync_all())
    assert len(state.items) == 25
    assert client.count("list_photos") == 3


def test_concurrent_load_more_is_dropped(engine, client):
    asyncio.run(engine.load_initial())

    async def scenario():
        client.gate = asyncio.Event()
        first = asyncio.ensure_future(engine.load_more())
        await asyncio.sleep(0)
        assert engine.state.is_loading_more is True

        second = await engine.load_more()
        client.gate.set()
        return await first, second

    first, second = asyncio.run(scenario())
    assert (first, second) == (True, False)
    assert client.count("list_photos") == 2
    assert len(engine.state.items) == 20
    assert engine.state.is_loading_more is False


def test_failed_load_more_keeps_progress(engine, client):
    asyncio.run(engine.load_initial())
    before = engine.state
    client.photo_error = RequestTimeoutError("timed out", 10)

    with pytest.raises(RequestTimeoutError):
        asyncio.run(engine.load_more())
    assert engine.state.items == before.items
    assert engine.state.has_more is True
    assert engine.state.is_loading_more is False

    client.photo_error = None
    assert asyncio.run(engine.load_more()) is True
    assert len(engine.state.items) == 20


def test_failed_load_initial_leaves_catalog_empty(engine, client):
    asyncio.run(engine.load_initial())
    client.photo_error = NetworkError("Failed to fetch photos: 500", 500)

    with pytest.raises(NetworkError):
        asyncio.run(engine.load_initial())
    assert engine.state == CatalogState()


def test_pages_are_not_deduplicated(engine, client):
    asyncio.run(engine.load_initial())
    # Two photos inserted upstream shift the next page back by two.
    client.catalog = photos(2, start=900) + client.catalog

    asyncio.run(engine.load_more())
    ids = [p.id for p in engine.state.items]
    assert ids[10:12] == ["p8", "p9"]
    assert len(ids) == 20


def test_empty_page_ends_pagination(engine, client):
    asyncio.run(engine.load_initial())
    client.catalog = client.catalog[:10]
    client.total = 25

    asyncio.run(engine.load_more())
    state = engine.state
    assert len(state.items) == 10
    assert state.total_count == 10
    assert state.has_more is False


def test_shrinking_total_never_drops_below_item_count(engine, client):
    asyncio.run(engine.load_initial())
    client.total = 12

    asyncio.run(engine.load_more())
    state = engine.state
    assert len(state.items) == 20
    assert state.total_count == 20
    assert_consistent(state)


def test_page_from_superseded_load_is_discarded(engine, client):
    asyncio.run(engine.load_initial())

    async def scenario():
        client.gate = asyncio.Event()
        pending = asyncio.ensure_future(engine.load_more())
        await asyncio.sleep(0)
        engine.reset()
        client.gate.set()
        return await pending

    assert asyncio.run(scenario()) is False
    assert engine.state == CatalogState()


def test_load_requires_ready_session(manager, client):
    asyncio.run(manager.restore())
    engine = CatalogSyncEngine(manager, client, page_size=10)
    with pytest.raises(InvalidStateError):
        asyncio.run(engine.load_initial())


def test_page_size_must_be_positive(manager, client):
    with pytest.raises(ValueError):
        CatalogSyncEngine(manager, client, page_size=0)


def test_grouped_uses_accumulated_items(engine):
    asyncio.run(engine.sync_all())
    now = datetime.datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc).astimezone()
    buckets = engine.grouped(now=now)
    assert sum(len(b.items) for b in buckets) == 25
    assert buckets[0].items[0].id == "p0"


def test_subscribers_see_loading_flag(engine):
    seen = []
    engine.subscribe(lambda state: seen.append(state.is_loading_more))
    asyncio.run(engine.load_initial())
    asyncio.run(engine.load_more())
    assert seen == [False, True, False, False]
