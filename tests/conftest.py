import asyncio
import datetime
from datetime import timezone

import pytest

from truphotos.auth import SessionManager
from truphotos.jellyfin_api import AuthResult
from truphotos.models import (
    CatalogPage,
    LibraryDescriptor,
    PhotoRecord,
    ServerDescriptor,
    UserIdentity,
)

HOME = "https://home.example.com"
CABIN = "https://cabin.example.com"

USER = UserIdentity(id="u1", name="alice", server_id="srv-home", server_name="Home")
HOME_SERVER = ServerDescriptor(name="Home", address=HOME, id="srv-home", access_token="tok-1")
CABIN_SERVER = ServerDescriptor(name="Cabin", address=CABIN, id="srv-cabin")
FAMILY = LibraryDescriptor(id="lib-family", name="Family", collection_type="homevideos")
TRIPS = LibraryDescriptor(id="lib-trips", name="Trips", collection_type="photos")


def make_photo(photo_id, created_at=None, **kwargs) -> PhotoRecord:
    if created_at is None:
        created_at = datetime.datetime(2024, 6, 15, 10, 30, tzinfo=timezone.utc)
    return PhotoRecord(
        id=photo_id,
        display_uri=f"{HOME}/Items/{photo_id}/Images/Primary?maxWidth=800",
        filename=f"{photo_id}.jpg",
        width=1920,
        height=1080,
        created_at=created_at,
        **kwargs
    )


class MemoryStore:
    """
    Dict-backed credential store with per-key failure injection.
    """

    def __init__(self, data=None):
        self.data = dict(data or {})
        self.fail_set = set()
        self.fail_remove = set()
        self.fail_get = False
        self.write_gate = None
        self.write_started = None

    async def get(self, key):
        await asyncio.sleep(0)
        if self.fail_get:
            raise OSError("keychain locked")
        return self.data.get(key)

    async def set(self, key, value):
        await asyncio.sleep(0)
        if self.write_gate is not None:
            self.write_started.set()
            await self.write_gate.wait()
        if key in self.fail_set:
            raise OSError(f"cannot write {key}")
        self.data[key] = value

    async def remove(self, key):
        await asyncio.sleep(0)
        if key in self.fail_remove:
            raise OSError(f"cannot remove {key}")
        self.data.pop(key, None)


class FakeClient:
    """
    Stands in for JellyfinClient. `catalog` is the server-side photo list,
    newest first; `total` overrides the reported TotalRecordCount.
    """

    def __init__(self):
        self.calls = []
        self.auth_error = None
        self.auth_result = AuthResult(user=USER, access_token="tok-1", server_id="srv-home")
        self.libraries = {HOME: [FAMILY, TRIPS], CABIN: [TRIPS]}
        self.library_errors = {}
        self.catalog = []
        self.total = None
        self.photo_error = None
        self.gate = None
        self.library_gate = None

    async def authenticate(self, address, username, password):
        self.calls.append(("authenticate", address, username))
        await asyncio.sleep(0)
        if self.auth_error:
            raise self.auth_error
        return self.auth_result

    async def list_libraries(self, server, user_id, token):
        self.calls.append(("list_libraries", server.address, user_id, token))
        if self.library_gate is not None:
            await self.library_gate.wait()
        await asyncio.sleep(0)
        error = self.library_errors.get(server.address)
        if error:
            raise error
        return list(self.libraries.get(server.address, []))

    async def list_photos(self, server, user_id, token, library_id, offset=0, limit=1000):
        self.calls.append(("list_photos", library_id, offset, limit))
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        if self.photo_error:
            raise self.photo_error
        items = tuple(self.catalog[offset:offset + limit])
        total = len(self.catalog) if self.total is None else self.total
        return CatalogPage(items=items, total_count=total, offset=offset)

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def manager(store, client):
    return SessionManager(store, client)
