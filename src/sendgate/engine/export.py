"""Cursor export service - bounded, forward-only walks over exportable collections."""

import logging
import math
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from sendgate.config import Settings, settings as default_settings
from sendgate.db.repositories import ExportRepository
from sendgate.errors import InvalidCursorError
from sendgate.models import ExportCollection, ExportCursor, ExportPage
from sendgate.observability.metrics import metrics

logger = logging.getLogger(__name__)


def clamp_page_limit(
    limit: float | int | None,
    default: int,
    maximum: int,
) -> int:
    """
    Turn any requested limit into a usable page size.

    Never raises: missing limits use the default, fractions are floored,
    anything below one becomes one, and anything above the maximum becomes
    the maximum.
    """
    if limit is None:
        return default
    if isinstance(limit, float):
        if math.isnan(limit):
            return default
        if math.isinf(limit):
            return maximum if limit > 0 else 1
    return max(1, min(math.floor(limit), maximum))


class ExportService:
    """Paginated reads of sends, events, and stats for external sync."""

    def __init__(self, session: AsyncSession, config: Optional[Settings] = None):
        self.session = session
        self.config = config or default_settings
        self.records = ExportRepository(session)

    def _resolve_cursor(self, collection: ExportCollection, cursor: str | None) -> int:
        if cursor is None:
            return 0
        try:
            decoded = ExportCursor.decode(cursor)
        except ValueError as e:
            raise InvalidCursorError(str(e)) from e
        if decoded.collection != collection:
            raise InvalidCursorError(
                f"cursor was issued for {decoded.collection.value}, not {collection.value}"
            )
        return decoded.after_seq

    async def export_page(
        self,
        tenant_id: str,
        collection: ExportCollection,
        cursor: str | None = None,
        limit: float | int | None = None,
    ) -> ExportPage:
        """
        Return the next page after ``cursor``.

        Reads ``limit + 1`` rows; the extra row only decides whether the walk
        is done, so a short page is always the last page.
        """
        page_size = clamp_page_limit(
            limit, self.config.default_page_size, self.config.max_page_size
        )
        after_seq = self._resolve_cursor(collection, cursor)

        records = await self.records.page_after(
            collection, tenant_id, after_seq, page_size + 1
        )
        has_more = len(records) > page_size
        records = records[:page_size]

        next_cursor = None
        if has_more:
            next_cursor = ExportCursor(collection, records[-1].seq).encode()

        metrics.inc_counter(f"export.{collection.value}.pages")
        metrics.inc_counter(f"export.{collection.value}.records", len(records))
        logger.debug(
            f"Export {collection.value} tenant={tenant_id} after={after_seq} "
            f"returned={len(records)} done={not has_more}"
        )

        return ExportPage(
            items=[r.model_dump(mode="json") for r in records],
            next_cursor=next_cursor,
            is_done=not has_more,
        )
