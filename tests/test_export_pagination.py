"""
Cursor export tests: completeness, growth, clamping, cursor validation.
"""

import base64
import json
import math

import pytest

from sendgate.engine import ExportService, InvalidCursorError, TrackingEngine, clamp_page_limit
from sendgate.models import EventType, ExportCollection, ExportCursor, SendStatus

from support import OTHER_TENANT, TENANT

N = 7


async def _seed_sends(db, count: int, start: int = 0, tenant_id: str = TENANT) -> list[str]:
    send_ids = []
    async with db.session() as session:
        tracking = TrackingEngine(session)
        for n in range(start, start + count):
            send, _ = await tracking.record_send(
                tenant_id=tenant_id,
                newsletter_id="nl-1",
                group_uuid="group-1",
                recipient_email=f"reader{n}@example.com",
                status=SendStatus.SENT,
            )
            send_ids.append(send.send_id)
    return send_ids


async def _page(db, collection, cursor=None, limit=None, tenant_id: str = TENANT):
    async with db.session() as session:
        return await ExportService(session, db.config).export_page(
            tenant_id, collection, cursor=cursor, limit=limit
        )


async def _walk(db, collection, limit, tenant_id: str = TENANT) -> list[list[dict]]:
    pages = []
    cursor = None
    while True:
        page = await _page(db, collection, cursor, limit, tenant_id)
        pages.append(page.items)
        if page.is_done:
            assert page.next_cursor is None
            return pages
        assert page.next_cursor is not None
        cursor = page.next_cursor


@pytest.mark.parametrize("limit", range(1, N + 6))
async def test_walk_returns_every_record_once(db, limit):
    send_ids = await _seed_sends(db, N)

    pages = await _walk(db, ExportCollection.SENDS, limit)
    seen = [item["send_id"] for page in pages for item in page]

    assert seen == send_ids
    assert all(len(page) == limit for page in pages[:-1])
    assert len(pages[-1]) <= limit
    seqs = [item["seq"] for page in pages for item in page]
    assert seqs == sorted(seqs)


async def test_empty_collection_is_done(db):
    page = await _page(db, ExportCollection.STATS)

    assert page.items == []
    assert page.is_done is True
    assert page.next_cursor is None


async def test_exact_multiple_ends_with_done_page(db):
    await _seed_sends(db, 4)

    first = await _page(db, ExportCollection.SENDS, limit=4)

    assert len(first.items) == 4
    assert first.is_done is True


async def test_growth_during_walk(db):
    original = await _seed_sends(db, 5)

    first = await _page(db, ExportCollection.SENDS, limit=3)
    assert [i["send_id"] for i in first.items] == original[:3]

    added = await _seed_sends(db, 3, start=100)

    seen = [i["send_id"] for i in first.items]
    cursor = first.next_cursor
    while cursor:
        page = await _page(db, ExportCollection.SENDS, cursor, limit=3)
        seen.extend(i["send_id"] for i in page.items)
        cursor = page.next_cursor

    assert len(seen) == len(set(seen))
    assert seen[:5] == original
    assert seen[5:] == added


async def test_updates_do_not_move_records(db):
    send_ids = await _seed_sends(db, 3)
    before = await _page(db, ExportCollection.SENDS, limit=10)

    async with db.session() as session:
        await TrackingEngine(session).record_event(
            TENANT, "nl-1", "reader0@example.com", EventType.DELIVERED
        )

    after = await _page(db, ExportCollection.SENDS, limit=10)
    assert [i["seq"] for i in after.items] == [i["seq"] for i in before.items]
    assert [i["send_id"] for i in after.items] == send_ids
    assert after.items[0]["status"] == "delivered"


@pytest.mark.parametrize("limit", [0, -5, 0.5, -math.inf])
async def test_small_limits_behave_like_one(db, limit):
    await _seed_sends(db, 3)

    page = await _page(db, ExportCollection.SENDS, limit=limit)

    assert len(page.items) == 1
    assert page.is_done is False


async def test_huge_limit_is_capped(db, config):
    await _seed_sends(db, config.max_page_size + 2)

    huge = await _page(db, ExportCollection.SENDS, limit=999999)
    capped = await _page(db, ExportCollection.SENDS, limit=config.max_page_size)

    assert len(huge.items) == config.max_page_size
    assert huge.items == capped.items
    assert huge.next_cursor == capped.next_cursor


async def test_fractional_limit_is_floored(db):
    await _seed_sends(db, 5)

    page = await _page(db, ExportCollection.SENDS, limit=2.9)

    assert len(page.items) == 2


def test_clamp_page_limit_table():
    assert clamp_page_limit(None, 10, 50) == 10
    assert clamp_page_limit(0, 10, 50) == 1
    assert clamp_page_limit(-5, 10, 50) == 1
    assert clamp_page_limit(2.7, 10, 50) == 2
    assert clamp_page_limit(999999, 10, 50) == 50
    assert clamp_page_limit(math.nan, 10, 50) == 10
    assert clamp_page_limit(math.inf, 10, 50) == 50
    assert clamp_page_limit(-math.inf, 10, 50) == 1


async def test_collections_are_tenant_scoped(db):
    mine = await _seed_sends(db, 2)
    await _seed_sends(db, 3, start=50, tenant_id=OTHER_TENANT)

    for collection in ExportCollection:
        pages = await _walk(db, collection, limit=10)
        items = [i for page in pages for i in page]
        assert all(i["tenant_id"] == TENANT for i in items)

    sends = await _page(db, ExportCollection.SENDS, limit=10)
    assert [i["send_id"] for i in sends.items] == mine
    # Each tracked send also produced one event
    events = await _page(db, ExportCollection.EVENTS, limit=10)
    assert len(events.items) == 2


async def test_stats_export(db):
    async with db.session() as session:
        tracking = TrackingEngine(session)
        await tracking.init_newsletter(TENANT, "nl-1", 10)
        await tracking.init_newsletter(TENANT, "nl-2", 20)

    page = await _page(db, ExportCollection.STATS, limit=1)
    assert page.items[0]["newsletter_id"] == "nl-1"
    rest = await _page(db, ExportCollection.STATS, page.next_cursor, limit=1)
    assert rest.items[0]["newsletter_id"] == "nl-2"
    assert rest.is_done


@pytest.mark.parametrize(
    "cursor",
    [
        "not a cursor",
        "5",
        "MTA",  # base64 of "10": a bare offset
        base64.urlsafe_b64encode(b'{"v":1,"c":"sends","s":-1}').decode(),
        base64.urlsafe_b64encode(b'{"v":2,"c":"sends","s":3}').decode(),
        base64.urlsafe_b64encode(b'{"v":1,"c":"tasks","s":3}').decode(),
        base64.urlsafe_b64encode(b'{"v":1,"c":"sends","s":"3"}').decode(),
        base64.urlsafe_b64encode(b'{"v":1,"c":"sends","s":9223372036854775808}').decode(),
        base64.urlsafe_b64encode(b'{"v":1,"c":"sends","s":1000000000000000000000000000000}').decode(),
    ],
)
async def test_malformed_cursor_rejected(db, cursor):
    with pytest.raises(InvalidCursorError):
        await _page(db, ExportCollection.SENDS, cursor=cursor)


async def test_cursor_from_other_collection_rejected(db):
    await _seed_sends(db, 3)
    page = await _page(db, ExportCollection.SENDS, limit=1)

    with pytest.raises(InvalidCursorError) as exc_info:
        await _page(db, ExportCollection.EVENTS, cursor=page.next_cursor)

    assert "sends" in exc_info.value.message


def test_cursor_round_trip_is_opaque():
    token = ExportCursor(ExportCollection.EVENTS, 42).encode()

    assert "=" not in token
    decoded = ExportCursor.decode(token)
    assert decoded == ExportCursor(ExportCollection.EVENTS, 42)
    assert json.loads(base64.urlsafe_b64decode(token + "=" * (-len(token) % 4)))["c"] == "events"
