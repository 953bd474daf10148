import asyncio
import datetime
import re
from dataclasses import dataclass
from datetime import timezone
from typing import List, Optional

import requests
from loguru import logger

from truphotos.config import APP_NAME, APP_VERSION, DEVICE_NAME, DEFAULTS
from truphotos.errors import AuthError, NetworkError, RequestTimeoutError, ValidationError
from truphotos.models import (
    Album,
    CatalogPage,
    FolderContents,
    LibraryDescriptor,
    PhotoRecord,
    ServerDescriptor,
    UserIdentity,
    optional_str,
    require_dict,
    require_str,
)

DEFAULT_DEVICE_ID = "truphotos-mobile"
PHOTO_COLLECTION_TYPES = {"photos", "photo"}
PHOTO_NAME_HINTS = ("photo", "picture", "image")
THUMBNAIL_MAX_WIDTH = 800
PHOTO_FIELDS = "Path,MediaSources,DateCreated,PremiereDate"

# Server timestamps carry up to 7 fractional digits; fromisoformat takes 6.
_FRACTION_RE = re.compile(r"\.(\d+)")


@dataclass(frozen=True)
class AuthResult:
    user: UserIdentity
    access_token: str
    server_id: str


def get_headers(token: Optional[str] = None, device_id: str = DEFAULT_DEVICE_ID) -> dict:
    """
    Return headers for requests to a Jellyfin server, authorized if a token is given.
    """
    headers = {
        "Content-Type": "application/json",
        "X-Emby-Authorization": (
            f'MediaBrowser Client="{APP_NAME}", Device="{DEVICE_NAME}", '
            f'DeviceId="{device_id}", Version="{APP_VERSION}"'
        ),
    }
    if token:
        headers["X-Emby-Token"] = token
    return headers


def parse_api_date(value) -> Optional[datetime.datetime]:
    """
    Parse a server timestamp into an aware datetime. Returns None if unparseable.
    """
    if not isinstance(value, str) or not value:
        return None
    text = value.replace("Z", "+00:00")
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        dt = datetime.datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def filter_photo_libraries(items: List[dict]) -> List[LibraryDescriptor]:
    """
    Keep only the views that hold photos. Photo libraries usually report
    'homevideos'; some servers use 'photos'. Untyped views qualify by name.
    Raises ValidationError for a view without an id.
    """
    libraries = []
    for item in items:
        item = require_dict(item, "library view")
        collection_type = (optional_str(item, "CollectionType", "library view") or "").lower()
        name = optional_str(item, "Name", "library view") or ""
        lowered = name.lower()

        if collection_type == "homevideos" or collection_type in PHOTO_COLLECTION_TYPES:
            pass
        elif not collection_type and any(hint in lowered for hint in PHOTO_NAME_HINTS):
            logger.debug("Treating untyped view '{}' as a photo library", name)
        else:
            continue

        libraries.append(LibraryDescriptor(
            id=require_str(item, "Id", "library view"),
            name=name,
            collection_type=item.get("CollectionType") or "photos",
        ))
    return libraries


def photo_from_item(item: dict, server: ServerDescriptor, token: str) -> PhotoRecord:
    """
    Convert one server photo item into a PhotoRecord.
    """
    item = require_dict(item, "photo")
    item_id = require_str(item, "Id", "photo")
    image_tag = (item.get("ImageTags") or {}).get("Primary")

    display_uri = ""
    full_uri = None
    if image_tag:
        base = f"{server.address}/Items/{item_id}/Images/Primary"
        display_uri = f"{base}?maxWidth={THUMBNAIL_MAX_WIDTH}&tag={image_tag}&api_key={token}"
        full_uri = f"{base}?tag={image_tag}&api_key={token}"

    created_at = parse_api_date(item.get("PremiereDate")) or parse_api_date(item.get("DateCreated"))
    if created_at is None:
        created_at = datetime.datetime.now(timezone.utc)

    user_data = item.get("UserData") or {}
    rating = 10 if user_data.get("IsFavorite") else user_data.get("Rating")
    sources = item.get("MediaSources") or []

    return PhotoRecord(
        id=item_id,
        display_uri=display_uri,
        full_resolution_uri=full_uri,
        filename=item.get("Name", ""),
        width=item.get("Width") or 1920,
        height=item.get("Height") or 1080,
        created_at=created_at,
        modified_at=parse_api_date(item.get("DateModified")),
        rating=rating,
        file_size_bytes=sources[0].get("Size") if sources else None,
        file_path=item.get("Path"),
        title=item.get("Name"),
    )


def album_from_item(item: dict) -> Album:
    item = require_dict(item, "album")
    return Album(
        id=require_str(item, "Id", "album"),
        title=item.get("Name") or "",
        photo_count=int(item.get("ChildCount") or 0),
        created_at=parse_api_date(item.get("DateCreated")) or datetime.datetime.now(timezone.utc),
        sort_name=item.get("SortName"),
    )


def _items(data, what: str) -> list:
    """
    The `Items` list of a query result, checked for shape.
    """
    if not isinstance(data, dict):
        raise NetworkError(f"Malformed {what} response: expected an object")
    items = data.get("Items") or []
    if not isinstance(items, list):
        raise NetworkError(f"Malformed {what} response: 'Items' is not a list")
    return items


def _photos_from(data, server: ServerDescriptor, token: str):
    return tuple(photo_from_item(item, server, token) for item in _items(data, "photos"))


def _albums_from(data, what: str):
    return tuple(album_from_item(item) for item in _items(data, what))


def _convert(what: str, convert, *args):
    """
    Run a payload conversion, reporting any shape problem as a NetworkError.
    """
    try:
        return convert(*args)
    except (ValidationError, KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
        logger.error("Malformed {} response: {}", what, e)
        raise NetworkError(f"Malformed {what} response: {e}") from e


class JellyfinClient:
    """
    Stateless request layer for a Jellyfin server. Blocking `requests`
    calls run in a worker thread so each call is an await point.
    """

    def __init__(self, device_id: str = DEFAULT_DEVICE_ID, timeout: float = DEFAULTS["request_timeout"],
                 session: requests.Session = None):
        self.device_id = device_id
        self.timeout = timeout
        self.http = session or requests.Session()

    def _request(self, method: str, url: str, token: Optional[str] = None,
                 timeout: Optional[float] = None, **kwargs) -> requests.Response:
        timeout = self.timeout if timeout is None else timeout
        try:
            return self.http.request(
                method, url,
                headers=get_headers(token, self.device_id),
                timeout=timeout,
                **kwargs
            )
        except requests.Timeout as e:
            raise RequestTimeoutError(f"Request timed out after {timeout}s: {method} {url}", timeout) from e
        except requests.RequestException as e:
            raise NetworkError(f"Request failed: {method} {url}: {e}") from e

    async def _call(self, method: str, url: str, **kwargs) -> requests.Response:
        return await asyncio.to_thread(self._request, method, url, **kwargs)

    async def _get_json(self, url: str, what: str, **kwargs) -> dict:
        resp = await self._call("GET", url, **kwargs)
        if not resp.ok:
            logger.error("Error fetching {}: {} {}", what, resp.status_code, resp.text)
            raise NetworkError(f"Failed to fetch {what}: {resp.status_code}", resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise NetworkError(f"Malformed {what} response: {e}", resp.status_code) from e

    # -----------------------------
    # AUTHENTICATION
    # -----------------------------

    async def authenticate(self, address: str, username: str, password: str,
                           timeout: Optional[float] = None) -> AuthResult:
        """
        Log in with username/password. Rejected credentials raise AuthError;
        an unreachable server raises NetworkError or RequestTimeoutError.
        """
        address = address.rstrip("/")
        resp = await self._call(
            "POST", f"{address}/Users/AuthenticateByName",
            json={"Username": username, "Pw": password},
            timeout=timeout,
        )
        if not resp.ok:
            logger.error("Failed to authenticate against {}: {}", address, resp.status_code)
            raise AuthError(f"Failed to authenticate: {resp.status_code}")

        try:
            data = resp.json()
            return AuthResult(
                user=UserIdentity.from_api(data["User"]),
                access_token=data["AccessToken"],
                server_id=data["ServerId"],
            )
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            raise AuthError(f"Malformed authentication response: {e}") from e

    async def get_current_user(self, address: str, token: str,
                               timeout: Optional[float] = None) -> UserIdentity:
        data = await self._get_json(f"{address.rstrip('/')}/Users/Me", "current user",
                                    token=token, timeout=timeout)
        return UserIdentity.from_api(data)

    async def get_public_server_info(self, address: str, timeout: Optional[float] = None) -> dict:
        """
        Server name/version/id; no authentication needed.
        """
        return await self._get_json(f"{address.rstrip('/')}/System/Info/Public", "server info",
                                    timeout=timeout)

    async def test_server_connection(self, server: ServerDescriptor,
                                     timeout: float = DEFAULTS["connection_test_timeout"]) -> bool:
        try:
            resp = await self._call("GET", f"{server.address}/System/Info/Public", timeout=timeout)
        except (NetworkError, RequestTimeoutError) as e:
            logger.info("Server {} not reachable: {}", server.address, e)
            return False
        return resp.ok

    # -----------------------------
    # CATALOG
    # -----------------------------

    async def list_libraries(self, server: ServerDescriptor, user_id: str, token: str,
                             timeout: Optional[float] = None) -> List[LibraryDescriptor]:
        """
        List the user's views on `server`, keeping photo libraries only.
        """
        data = await self._get_json(f"{server.address}/Users/{user_id}/Views", "libraries",
                                    token=token, timeout=timeout)
        items = _items(data, "libraries")
        libraries = _convert("libraries", filter_photo_libraries, items)
        logger.info("Found {} photo libraries out of {} views on {}",
                    len(libraries), len(items), server.address)
        return libraries

    async def list_photos(self, server: ServerDescriptor, user_id: str, token: str,
                          library_id: str, offset: int = 0, limit: int = DEFAULTS["page_size"],
                          timeout: Optional[float] = None) -> CatalogPage:
        """
        Fetch one page of photos, newest first.
        """
        params = {
            "ParentId": library_id,
            "IncludeItemTypes": "Photo",
            "Recursive": "true",
            "Fields": PHOTO_FIELDS,
            "StartIndex": str(offset),
            "Limit": str(limit),
            "SortBy": "DateCreated,PremiereDate",
            "SortOrder": "Descending",
        }
        data = await self._get_json(f"{server.address}/Users/{user_id}/Items", "photos",
                                    token=token, timeout=timeout, params=params)
        items = _convert("photos", _photos_from, data, server, token)
        return CatalogPage(
            items=items,
            total_count=_convert("photos", lambda: int(data.get("TotalRecordCount") or 0)),
            offset=offset,
        )

    async def get_all_photos(self, server: ServerDescriptor, user_id: str, token: str,
                             limit: int = DEFAULTS["page_size"],
                             timeout: Optional[float] = None) -> List[PhotoRecord]:
        """
        First `limit` photos of every photo library on `server`, merged
        newest first.
        """
        photos = []
        for library in await self.list_libraries(server, user_id, token, timeout=timeout):
            page = await self.list_photos(server, user_id, token, library.id,
                                          limit=limit, timeout=timeout)
            photos.extend(page.items)
        photos.sort(key=lambda photo: photo.created_at, reverse=True)
        return photos

    # -----------------------------
    # ALBUMS / FOLDERS
    # -----------------------------

    async def list_albums(self, server: ServerDescriptor, user_id: str, token: str, library_id: str,
                          limit: int = DEFAULTS["album_limit"],
                          timeout: float = DEFAULTS["album_request_timeout"]) -> List[Album]:
        """
        Top-level folders of a library. Listing folders is slow on large
        libraries, hence the longer default timeout.
        """
        params = {
            "ParentId": library_id,
            "Recursive": "false",
            "StartIndex": "0",
            "Limit": str(limit),
        }
        data = await self._get_json(f"{server.address}/Users/{user_id}/Items", "albums",
                                    token=token, timeout=timeout, params=params)
        items = _items(data, "albums")
        folders = [item for item in items if isinstance(item, dict) and item.get("IsFolder") is True]
        logger.info("Found {} folders out of {} items in library {}", len(folders), len(items), library_id)
        return list(_convert("albums", _albums_from, {"Items": folders}, "albums"))

    async def get_folder_contents(self, server: ServerDescriptor, user_id: str, token: str,
                                  folder_id: str, timeout: Optional[float] = None) -> FolderContents:
        """
        Direct subfolders (by name) and photos (newest first) of a folder.
        """
        url = f"{server.address}/Users/{user_id}/Items"
        folder_data = await self._get_json(url, "folders", token=token, timeout=timeout, params={
            "ParentId": folder_id,
            "IncludeItemTypes": "Folder,PhotoAlbum",
            "Recursive": "false",
            "Fields": "DateCreated,ChildCount",
            "SortBy": "SortName",
            "SortOrder": "Ascending",
        })
        folders = _convert("folders", _albums_from, folder_data, "folders")

        photo_data = await self._get_json(url, "photos", token=token, timeout=timeout, params={
            "ParentId": folder_id,
            "IncludeItemTypes": "Photo",
            "Recursive": "false",
            "Fields": PHOTO_FIELDS,
            "SortBy": "DateCreated,PremiereDate",
            "SortOrder": "Descending",
        })
        photos = _convert("photos", _photos_from, photo_data, server, token)
        return FolderContents(folders=folders, photos=photos)

    async def set_favorite(self, server: ServerDescriptor, user_id: str, token: str,
                           item_id: str, is_favorite: bool, timeout: Optional[float] = None) -> bool:
        """
        Mark or unmark an item as favorite. Returns False on failure.
        """
        url = f"{server.address}/Users/{user_id}/FavoriteItems/{item_id}"
        try:
            resp = await self._call("POST" if is_favorite else "DELETE", url, token=token, timeout=timeout)
        except (NetworkError, RequestTimeoutError) as e:
            logger.error("Error marking {} as favorite: {}", item_id, e)
            return False
        if not resp.ok:
            logger.error("Error marking {} as favorite: {}", item_id, resp.status_code)
        return resp.ok
