"""Lazy page-by-page walking of provider list endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

from ..adapters.base import ProviderAdapter
from ..exceptions import ValidationFailedError
from ..models.connection import ConnectionSnapshot
from ..schemas.payload import FetchedPage
from ..utils.logging import setup_logger
from .request_queue import RequestQueue

logger = setup_logger(__name__)


class PaginatedFetcher:
    """Yield pages one at a time; the next request is only sent when asked for.

    Consumers persist each page before pulling the next, so a crash or
    cancellation never loses a page whose cursor was already advanced.
    """

    def __init__(self, *, max_pages: int = 1000) -> None:
        self.max_pages = max_pages

    async def iter_pages(
        self,
        adapter: ProviderAdapter,
        queue: RequestQueue,
        connection: ConnectionSnapshot,
        entity_type: str,
        *,
        since: datetime,
        until: datetime,
        cursor: str | None = None,
    ) -> AsyncIterator[FetchedPage]:
        """Iterate pages of ``entity_type`` created within ``[since, until]``.

        Stops after an empty page, a page without a next cursor, or
        ``max_pages`` pages.

        Raises:
            ValidationFailedError: The provider returned the same cursor twice.
        """

        log = logger.bind(connection_id=connection.id, provider=adapter.provider)
        pages = 0
        while pages < self.max_pages:
            page = await adapter.fetch_page(
                queue, connection, entity_type, since=since, until=until, cursor=cursor
            )
            pages += 1
            log.debug(
                "Fetched %s page %d with %d records",
                entity_type,
                pages,
                len(page.records),
            )
            if page.records:
                yield page
            if not page.records or page.next_cursor is None:
                return
            if page.next_cursor == cursor:
                raise ValidationFailedError(
                    f"{adapter.provider} pagination for {entity_type} did not advance "
                    f"past cursor '{cursor}'"
                )
            cursor = page.next_cursor

        log.warning("Stopped %s pagination after %d pages", entity_type, pages)

    async def fetch_all(
        self,
        adapter: ProviderAdapter,
        queue: RequestQueue,
        connection: ConnectionSnapshot,
        entity_type: str,
        *,
        since: datetime,
        until: datetime,
    ) -> AsyncIterator[dict[str, Any]]:
        """Flatten :meth:`iter_pages` into individual records."""

        async for page in self.iter_pages(
            adapter, queue, connection, entity_type, since=since, until=until
        ):
            for record in page.records:
                yield record
