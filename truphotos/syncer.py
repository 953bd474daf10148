import datetime
from dataclasses import replace
from typing import Callable, List, Optional

from loguru import logger

from truphotos.auth import SessionManager, SessionState
from truphotos.config import DEFAULTS
from truphotos.errors import InvalidStateError
from truphotos.grouping import group_photos_by_date
from truphotos.jellyfin_api import JellyfinClient
from truphotos.models import CatalogPage, CatalogState, DateBucket


class CatalogSyncEngine:
    """
    Paginated retrieval of the selected library's photos:
     - load_initial replaces everything with the first page
     - load_more appends the next page, at most one fetch in flight
     - sync_all walks every page

    Items keep the server's order; pages are not deduplicated.
    """

    def __init__(self, session_manager: SessionManager, client: JellyfinClient,
                 page_size: int = DEFAULTS["page_size"]):
        if page_size <= 0:
            raise ValueError(f"page_size must be positive, got {page_size}")
        self.session_manager = session_manager
        self.client = client
        self.page_size = page_size

        self._state = CatalogState()
        # Bumped by load_initial/reset so a late page from an older load is dropped.
        self._generation = 0
        self._listeners: List[Callable[[CatalogState], None]] = []

    @property
    def state(self) -> CatalogState:
        return self._state

    def subscribe(self, callback: Callable[[CatalogState], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _set_state(self, state: CatalogState):
        self._state = state
        for callback in list(self._listeners):
            try:
                callback(state)
            except Exception:
                logger.exception("Catalog listener {!r} failed", callback)

    def reset(self):
        """
        Drop all accumulated items, e.g. after the library selection changed.
        """
        self._generation += 1
        self._set_state(CatalogState())

    # -----------------------------
    # FETCHING
    # -----------------------------

    async def _fetch_page(self, offset: int) -> CatalogPage:
        if self.session_manager.state != SessionState.READY:
            raise InvalidStateError("No library selected")
        s = self.session_manager.session
        return await self.client.list_photos(
            s.selected_server,
            s.user.id,
            s.auth_token,
            s.selected_library.id,
            offset=offset,
            limit=self.page_size,
        )

    @staticmethod
    def _merged(items, reported_total: int, page_was_empty: bool) -> CatalogState:
        total = reported_total
        if page_was_empty or total < len(items):
            if total != len(items):
                logger.warning("Server reported {} photos but {} were received; using {}",
                               reported_total, len(items), len(items))
            total = len(items)
        return CatalogState(
            items=items,
            total_count=total,
            has_more=len(items) < total,
        )

    async def load_initial(self) -> CatalogState:
        """
        Fetch the first page and replace the whole catalog with it.
        On failure the catalog is left empty and the error is raised.
        """
        self._generation += 1
        generation = self._generation
        try:
            page = await self._fetch_page(0)
        except Exception:
            if generation == self._generation:
                self._set_state(CatalogState())
            raise

        if generation != self._generation:
            logger.info("Discarding initial page superseded by a newer load")
            return self._state

        self._set_state(self._merged(tuple(page.items), page.total_count, not page.items))
        logger.info("Loaded {} of {} photos", len(self._state.items), self._state.total_count)
        return self._state

    async def load_more(self) -> bool:
        """
        Append the next page. Returns False without fetching when there is
        nothing more to load or a fetch is already in flight. On failure
        the items and has_more are left as they were.
        """
        if not self._state.has_more or self._state.is_loading_more:
            return False

        generation = self._generation
        offset = len(self._state.items)
        self._set_state(replace(self._state, is_loading_more=True))
        try:
            page = await self._fetch_page(offset)
        finally:
            if generation == self._generation:
                self._set_state(replace(self._state, is_loading_more=False))

        if generation != self._generation:
            logger.info("Discarding page at offset {} from a superseded load", offset)
            return False

        items = self._state.items + tuple(page.items)
        self._set_state(self._merged(items, page.total_count, not page.items))
        logger.debug("Loaded {} of {} photos", len(items), self._state.total_count)
        return True

    async def sync_all(self) -> CatalogState:
        """
        Load the first page, then keep paging until the catalog is complete.
        """
        await self.load_initial()
        while self._state.has_more:
            if not await self.load_more():
                break
        return self._state

    def grouped(self, now: Optional[datetime.datetime] = None) -> List[DateBucket]:
        return group_photos_by_date(self._state.items, now=now)
