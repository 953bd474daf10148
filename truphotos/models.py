"""
Value types shared by the session manager, the catalog engine and the
presentation layer. All of them are frozen; state changes produce new
instances via dataclasses.replace().
"""

import datetime
from dataclasses import dataclass, field, replace
from datetime import timezone
from enum import Enum
from typing import Optional, Tuple

from truphotos.errors import ValidationError


def require_str(data: dict, key: str, what: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{what}: missing or invalid '{key}'")
    return value


def optional_str(data: dict, key: str, what: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{what}: '{key}' must be a string")
    return value


def require_dict(data, what: str) -> dict:
    if not isinstance(data, dict):
        raise ValidationError(f"{what}: expected an object, got {type(data).__name__}")
    return data


class SelectedTab(str, Enum):
    TIMELINE = "Timeline"
    LIBRARY = "Library"


@dataclass(frozen=True)
class UserIdentity:
    id: str
    name: str
    server_id: Optional[str] = None
    server_name: Optional[str] = None

    @classmethod
    def from_api(cls, item: dict) -> "UserIdentity":
        """
        Build from the server's User object (PascalCase keys).
        """
        item = require_dict(item, "user")
        return cls(
            id=require_str(item, "Id", "user"),
            name=require_str(item, "Name", "user"),
            server_id=item.get("ServerId"),
            server_name=item.get("ServerName"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "serverId": self.server_id,
            "serverName": self.server_name,
        }

    @classmethod
    def from_dict(cls, data) -> "UserIdentity":
        data = require_dict(data, "user")
        return cls(
            id=require_str(data, "id", "user"),
            name=require_str(data, "name", "user"),
            server_id=optional_str(data, "serverId", "user"),
            server_name=optional_str(data, "serverName", "user"),
        )


@dataclass(frozen=True)
class ServerDescriptor:
    """
    A media server. `address` (base URL, no trailing slash) is its identity.
    """

    name: str
    address: str
    id: str
    access_token: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "address", self.address.rstrip("/"))

    def same_server(self, other: Optional["ServerDescriptor"]) -> bool:
        return other is not None and other.address == self.address

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "address": self.address,
            "id": self.id,
            "accessToken": self.access_token,
        }

    @classmethod
    def from_dict(cls, data) -> "ServerDescriptor":
        data = require_dict(data, "server")
        address = require_str(data, "address", "server")
        if not address.startswith(("http://", "https://")):
            raise ValidationError(f"server: address is not an http(s) URL: {address!r}")
        return cls(
            name=require_str(data, "name", "server"),
            address=address,
            id=require_str(data, "id", "server"),
            access_token=optional_str(data, "accessToken", "server"),
        )


@dataclass(frozen=True)
class LibraryDescriptor:
    id: str
    name: str
    collection_type: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "collectionType": self.collection_type,
        }

    @classmethod
    def from_dict(cls, data) -> "LibraryDescriptor":
        data = require_dict(data, "library")
        return cls(
            id=require_str(data, "id", "library"),
            name=require_str(data, "name", "library"),
            collection_type=optional_str(data, "collectionType", "library"),
        )


@dataclass(frozen=True)
class Session:
    """
    Authoritative authentication/selection state of one client.

    Invariants:
     - auth_token and user are both set or both None
     - selected_library is set only if selected_server is set
     - known_servers contains selected_server when it is set
    """

    auth_token: Optional[str] = None
    user: Optional[UserIdentity] = None
    selected_server: Optional[ServerDescriptor] = None
    selected_library: Optional[LibraryDescriptor] = None
    known_servers: Tuple[ServerDescriptor, ...] = ()
    selected_tab: SelectedTab = SelectedTab.TIMELINE
    libraries: Tuple[LibraryDescriptor, ...] = ()

    @property
    def is_authenticated(self) -> bool:
        return self.auth_token is not None and self.user is not None

    def with_known_server(self, server: ServerDescriptor) -> "Session":
        """
        Return a copy whose known_servers includes `server` (matched by address).
        """
        if any(s.same_server(server) for s in self.known_servers):
            return self
        return replace(self, known_servers=self.known_servers + (server,))


EMPTY_SESSION = Session()


@dataclass(frozen=True, eq=False)
class PhotoRecord:
    """
    A normalized photo. `id` is the sole identity: two records with the
    same id are the same photo even if other fields drifted between fetches.
    """

    id: str
    display_uri: str
    filename: str
    width: int
    height: int
    created_at: datetime.datetime
    full_resolution_uri: Optional[str] = None
    modified_at: Optional[datetime.datetime] = None
    rating: Optional[float] = None
    file_size_bytes: Optional[int] = None
    file_path: Optional[str] = None
    title: Optional[str] = None
    media_type: str = "photo"

    def __eq__(self, other):
        if not isinstance(other, PhotoRecord):
            return NotImplemented
        return self.id == other.id

    def __hash__(self):
        return hash(self.id)


@dataclass(frozen=True)
class CatalogPage:
    items: Tuple[PhotoRecord, ...]
    total_count: int
    offset: int


@dataclass(frozen=True)
class CatalogState:
    items: Tuple[PhotoRecord, ...] = ()
    total_count: int = 0
    has_more: bool = False
    is_loading_more: bool = False


@dataclass(frozen=True)
class DateBucket:
    label: str
    day_start: datetime.datetime
    items: Tuple[PhotoRecord, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Album:
    """
    A folder or photo album inside a library, as shown on the Library tab.
    """

    id: str
    title: str
    photo_count: int
    created_at: datetime.datetime
    sort_name: Optional[str] = None


@dataclass(frozen=True)
class FolderContents:
    folders: Tuple[Album, ...] = ()
    photos: Tuple[PhotoRecord, ...] = ()


# -----------------------------
# Serializable photo form
# -----------------------------

_PHOTO_FIELDS = (
    "id", "display_uri", "full_resolution_uri", "filename", "width", "height",
    "rating", "file_size_bytes", "file_path", "title", "media_type",
)


def _to_iso(value: datetime.datetime) -> str:
    text = value.isoformat(timespec="milliseconds")
    if value.utcoffset() == datetime.timedelta(0):
        text = text[:-len("+00:00")] + "Z"
    return text


def _from_iso(text: str) -> datetime.datetime:
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.datetime.fromisoformat(text)


def photo_to_serializable(photo: PhotoRecord) -> dict:
    """
    Convert a PhotoRecord into a JSON-safe dict (datetimes -> ISO strings).
    An invalid created_at falls back to the current time; an invalid
    modified_at is dropped.
    """
    if isinstance(photo.created_at, datetime.datetime):
        created_at = _to_iso(photo.created_at)
    else:
        created_at = _to_iso(datetime.datetime.now(timezone.utc))

    modified_at = None
    if isinstance(photo.modified_at, datetime.datetime):
        modified_at = _to_iso(photo.modified_at)

    data = {name: getattr(photo, name) for name in _PHOTO_FIELDS}
    data["created_at"] = created_at
    data["modified_at"] = modified_at
    return data


def serializable_to_photo(data: dict) -> PhotoRecord:
    """
    Inverse of photo_to_serializable().
    """
    fields = {name: data.get(name) for name in _PHOTO_FIELDS if name in data}
    fields.setdefault("media_type", "photo")
    modified_at = data.get("modified_at")
    return PhotoRecord(
        created_at=_from_iso(data["created_at"]),
        modified_at=_from_iso(modified_at) if modified_at else None,
        **fields,
    )
