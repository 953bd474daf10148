import asyncio
import json
import uuid
from dataclasses import replace
from enum import Enum
from typing import Callable, Dict, List, Optional

from loguru import logger

from truphotos.errors import (
    AuthError,
    InvalidStateError,
    PersistenceError,
    TruPhotosError,
    ValidationError,
)
from truphotos.jellyfin_api import JellyfinClient
from truphotos.local_store import CredentialStore
from truphotos.models import (
    EMPTY_SESSION,
    LibraryDescriptor,
    SelectedTab,
    ServerDescriptor,
    Session,
    UserIdentity,
)

# === CREDENTIAL STORE KEYS ===
CLIENT_ID_KEY = "jellyfin_client_id"
TOKEN_KEY = "jellyfin_auth_token"
USER_KEY = "jellyfin_user"
SERVER_KEY = "jellyfin_selected_server"
LIBRARY_KEY = "jellyfin_selected_library"
TAB_KEY = "jellyfin_selected_tab"

# Cleared on logout. The tab and client id outlive a session.
SESSION_KEYS = (TOKEN_KEY, USER_KEY, SERVER_KEY, LIBRARY_KEY)

DEFAULT_SERVER_NAME = "Jellyfin Server"


class SessionState(str, Enum):
    RESTORING = "Restoring"
    UNAUTHENTICATED = "Unauthenticated"
    AUTHENTICATED_NO_SERVER = "AuthenticatedNoServer"
    AUTHENTICATED_NO_LIBRARY = "AuthenticatedNoLibrary"
    READY = "Ready"


async def get_client_identifier(store: CredentialStore) -> str:
    """
    Return this installation's device id, generating and storing one on first use.
    """
    try:
        client_id = await store.get(CLIENT_ID_KEY)
        if not client_id:
            client_id = str(uuid.uuid4())
            await store.set(CLIENT_ID_KEY, client_id)
    except Exception as e:
        raise PersistenceError(f"Cannot read or store client id: {e}", {CLIENT_ID_KEY: e}) from e
    return client_id


def _loads(text: str, what: str):
    try:
        return json.loads(text)
    except ValueError as e:
        raise ValidationError(f"{what}: persisted value is not JSON") from e


class SessionManager:
    """
    Owns the authentication/selection state machine:

        Restoring -> Unauthenticated | AuthenticatedNoServer
                     | AuthenticatedNoLibrary | Ready        (restore)
        Unauthenticated -> AuthenticatedNoServer             (login)
        AuthenticatedNoServer -> AuthenticatedNoLibrary      (select_server)
        AuthenticatedNoLibrary -> Ready                      (select_library)
        Ready -> AuthenticatedNoLibrary                      (clear_library)
        Ready | AuthenticatedNoLibrary -> AuthenticatedNoServer  (clear_server)
        any -> Unauthenticated                               (logout)

    The state is derived from the Session fields. A failed operation leaves
    the session untouched. Readers get immutable snapshots via `session`
    or by subscribing.
    """

    def __init__(self, store: CredentialStore, client: JellyfinClient):
        self.store = store
        self.client = client
        self._session = EMPTY_SESSION
        self._restoring = True
        self._listeners: List[Callable[[Session], None]] = []

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> SessionState:
        if self._restoring:
            return SessionState.RESTORING
        s = self._session
        if not s.is_authenticated:
            return SessionState.UNAUTHENTICATED
        if s.selected_server is None:
            return SessionState.AUTHENTICATED_NO_SERVER
        if s.selected_library is None:
            return SessionState.AUTHENTICATED_NO_LIBRARY
        return SessionState.READY

    def subscribe(self, callback: Callable[[Session], None]) -> Callable[[], None]:
        """
        Call `callback` with every new session snapshot. Returns an unsubscribe function.
        """
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _apply(self, session: Session):
        self._session = session
        for callback in list(self._listeners):
            try:
                callback(session)
            except Exception:
                logger.exception("Session listener {!r} failed", callback)

    # -----------------------------
    # PERSISTENCE HELPERS
    # -----------------------------

    async def _persist(self, values: Dict[str, Optional[str]]):
        """
        Write (or, for None, remove) all keys concurrently. Raises one
        PersistenceError naming every key that failed.
        """
        keys = list(values)
        ops = [
            self.store.remove(key) if value is None else self.store.set(key, value)
            for key, value in values.items()
        ]
        results = await asyncio.gather(*ops, return_exceptions=True)
        failures = {key: r for key, r in zip(keys, results) if isinstance(r, Exception)}
        if failures:
            raise PersistenceError(f"Failed to persist {', '.join(failures)}", failures)

    async def _rollback(self, keys):
        results = await asyncio.gather(*(self.store.remove(k) for k in keys), return_exceptions=True)
        for key, result in zip(keys, results):
            if isinstance(result, Exception):
                logger.warning("Rollback could not remove {}: {}", key, result)

    # -----------------------------
    # RESTORE / LOGIN / LOGOUT
    # -----------------------------

    async def restore(self) -> SessionState:
        """
        Load the persisted session. Anything missing or malformed among
        token, user and server means no session at all.
        """
        try:
            token, user_json, server_json, library_json, tab = await asyncio.gather(
                self.store.get(TOKEN_KEY),
                self.store.get(USER_KEY),
                self.store.get(SERVER_KEY),
                self.store.get(LIBRARY_KEY),
                self.store.get(TAB_KEY),
            )
            session = self._parse_persisted(token, user_json, server_json, library_json, tab)
        except ValidationError as e:
            logger.warning("Discarding corrupt saved session: {}", e)
            session = EMPTY_SESSION
        except Exception as e:
            logger.error("Failed to load saved session: {}", e)
            session = EMPTY_SESSION

        if session.is_authenticated:
            try:
                libraries = await self.client.list_libraries(
                    session.selected_server, session.user.id, session.auth_token
                )
                session = replace(session, libraries=tuple(libraries))
            except TruPhotosError as e:
                logger.error("Failed to fetch libraries: {}", e)

        self._restoring = False
        self._apply(session)
        logger.info("Session restored: {}", self.state.value)
        return self.state

    def _parse_persisted(self, token, user_json, server_json, library_json, tab) -> Session:
        if not (token and user_json and server_json):
            return EMPTY_SESSION

        user = UserIdentity.from_dict(_loads(user_json, "user"))
        server = ServerDescriptor.from_dict(_loads(server_json, "server"))

        library = None
        if library_json:
            try:
                library = LibraryDescriptor.from_dict(_loads(library_json, "library"))
            except ValidationError as e:
                logger.warning("Ignoring corrupt saved library: {}", e)

        try:
            selected_tab = SelectedTab(tab)
        except ValueError:
            selected_tab = SelectedTab.TIMELINE

        return Session(
            auth_token=token,
            user=user,
            selected_server=server,
            selected_library=library,
            known_servers=(server,),
            selected_tab=selected_tab,
        )

    async def login(self, address: str, username: str, password: str) -> Session:
        """
        Authenticate against `address` and persist token, user and server.
        Errors propagate unchanged; nothing is retried.

        The login server becomes the only known server but is not selected:
        the caller still has to select_server(). restore() treats the saved
        server as selected, so a restart right after login comes back as
        AUTHENTICATED_NO_LIBRARY rather than AUTHENTICATED_NO_SERVER.
        """
        if not (address and username and password):
            raise AuthError("Server address, username and password are required")

        result = await self.client.authenticate(address, username, password)
        server = ServerDescriptor(
            name=result.user.server_name or DEFAULT_SERVER_NAME,
            address=address,
            id=result.server_id,
            access_token=result.access_token,
        )

        try:
            await self._persist({
                TOKEN_KEY: result.access_token,
                USER_KEY: json.dumps(result.user.to_dict()),
                SERVER_KEY: json.dumps(server.to_dict()),
            })
        except PersistenceError:
            await self._rollback((TOKEN_KEY, USER_KEY, SERVER_KEY))
            raise

        self._restoring = False
        self._apply(Session(
            auth_token=result.access_token,
            user=result.user,
            known_servers=(server,),
            selected_tab=self._session.selected_tab,
        ))
        logger.info("Logged in as {} on {}", result.user.name, server.address)
        return self._session

    async def logout(self):
        """
        Forget the session. Store failures are logged, never raised: the
        in-memory session is always cleared.
        """
        try:
            await self._persist({key: None for key in SESSION_KEYS})
        except PersistenceError as e:
            logger.warning("Could not clear {} on logout: {}", ", ".join(e.failures), e)
        self._restoring = False
        self._apply(EMPTY_SESSION)
        logger.info("Logged out")

    # -----------------------------
    # SERVER / LIBRARY SELECTION
    # -----------------------------

    def add_server(self, server: ServerDescriptor):
        self._apply(self._session.with_known_server(server))

    async def select_server(self, server: ServerDescriptor) -> List[LibraryDescriptor]:
        """
        Switch to `server`. Its library list must load before anything is
        persisted or applied, so an unreachable server is never selected.
        The previous library selection is dropped.
        """
        before = self._session
        if not before.is_authenticated:
            raise InvalidStateError("Not authenticated")

        token = server.access_token or before.auth_token
        libraries = await self.client.list_libraries(server, before.user.id, token)

        if self._session.auth_token != before.auth_token:
            raise InvalidStateError("Session changed while selecting a server")

        await self._persist({
            SERVER_KEY: json.dumps(server.to_dict()),
            LIBRARY_KEY: None,
        })

        current = self._session
        if current.auth_token != before.auth_token:
            # Logged out (or in again) during the write; take it back.
            await self._restore_server_key(current)
            raise InvalidStateError("Session changed while selecting a server")

        self._apply(replace(
            current.with_known_server(server),
            selected_server=server,
            selected_library=None,
            libraries=tuple(libraries),
        ))
        logger.info("Selected server {} ({} photo libraries)", server.address, len(libraries))
        return libraries

    async def _restore_server_key(self, current: Session):
        """
        Make the persisted server match `current` again after a write that
        lost a race with logout or login.
        """
        server = current.selected_server
        if server is None and current.is_authenticated and current.known_servers:
            server = current.known_servers[0]
        if server is None:
            await self._rollback((SERVER_KEY,))
            return
        try:
            await self._persist({SERVER_KEY: json.dumps(server.to_dict())})
        except PersistenceError as e:
            logger.warning("Could not restore saved server: {}", e)

    async def select_library(self, library: LibraryDescriptor):
        if self._session.selected_server is None:
            raise InvalidStateError("Select a server before a library")

        await self._persist({LIBRARY_KEY: json.dumps(library.to_dict())})

        current = self._session
        if current.selected_server is None:
            await self._rollback((LIBRARY_KEY,))
            raise InvalidStateError("Server was cleared while selecting a library")
        self._apply(replace(current, selected_library=library))
        logger.info("Selected library {}", library.name)

    async def clear_library(self):
        await self._persist({LIBRARY_KEY: None})
        self._apply(replace(self._session, selected_library=None))

    async def clear_server(self):
        await self._persist({SERVER_KEY: None, LIBRARY_KEY: None})
        self._apply(replace(
            self._session,
            selected_server=None,
            selected_library=None,
            libraries=(),
        ))

    async def refresh_libraries(self) -> List[LibraryDescriptor]:
        """
        Re-fetch the library list of the current server. On failure the
        existing list and selection are kept.
        """
        s = self._session
        if s.selected_server is None or not s.is_authenticated:
            return []

        try:
            libraries = await self.client.list_libraries(s.selected_server, s.user.id, s.auth_token)
        except TruPhotosError as e:
            logger.error("Failed to refresh libraries: {}", e)
            return list(s.libraries)

        current = self._session
        if not s.selected_server.same_server(current.selected_server):
            logger.info("Server changed during refresh; dropping stale library list")
            return list(current.libraries)

        self._apply(replace(current, libraries=tuple(libraries)))
        return libraries

    async def set_selected_tab(self, tab):
        tab = SelectedTab(tab)
        await self._persist({TAB_KEY: tab.value})
        self._apply(replace(self._session, selected_tab=tab))
