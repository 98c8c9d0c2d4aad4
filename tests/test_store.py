import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from entries import FeedEntry
from errors import FeedNotFoundError, ItemNotFoundError, StorageError
from models import DatabaseQueue, RefreshMeta
from utils import utcnow


BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_entries(count, start=0):
    return [
        FeedEntry(
            guid=f"guid-{n}",
            title=f"Item {n}",
            link=f"https://example.com/{n}",
            published_at=BASE_TIME + timedelta(hours=n),
        )
        for n in range(start, start + count)
    ]


async def add_feed(db, url="https://example.com/feed.xml", title="Example"):
    return await db.execute('upsert_feed', url=url, title=title)


@pytest.mark.asyncio
async def test_upsert_items_is_idempotent(db):
    feed_id = await add_feed(db)
    entries = make_entries(3)

    assert await db.execute('upsert_items', feed_id=feed_id, entries=entries) == 3
    assert await db.execute('upsert_items', feed_id=feed_id, entries=entries) == 0
    assert await db.execute('count_items', feed_id=feed_id) == 3


@pytest.mark.asyncio
async def test_upsert_items_fills_missing_title_and_link(db):
    feed_id = await add_feed(db)
    await db.execute('upsert_items', feed_id=feed_id, entries=[FeedEntry(guid="bare")])

    [item] = await db.execute('list_items', feed_id=feed_id)
    assert item.title == "(untitled)"
    assert item.link == "#"
    assert item.published_at is None


@pytest.mark.asyncio
async def test_deleted_item_is_never_resurrected(db):
    feed_id = await add_feed(db)
    entries = make_entries(2)
    await db.execute('upsert_items', feed_id=feed_id, entries=entries)
    items = await db.execute('list_items', feed_id=feed_id)
    target = next(i for i in items if i.guid == "guid-0")

    assert await db.execute('toggle_read', item_id=target.id) is True
    assert await db.execute('sweep_read_items', feed_id=feed_id) == 1
    assert await db.execute('is_tombstoned', feed_id=feed_id, guid="guid-0")

    for _ in range(3):
        assert await db.execute('upsert_items', feed_id=feed_id, entries=entries) == 0
    guids = {i.guid for i in await db.execute('list_items', feed_id=feed_id)}
    assert guids == {"guid-1"}


@pytest.mark.asyncio
async def test_item_limit_keeps_newest_and_tombstones_rest(db):
    feed_id = await add_feed(db)
    await db.execute('upsert_items', feed_id=feed_id, entries=make_entries(210))

    deleted = await db.execute('enforce_item_limit', feed_id=feed_id, max_items=200)

    assert deleted == 10
    assert await db.execute('count_items', feed_id=feed_id) == 200
    remaining = {i.guid for i in await db.execute('list_items', feed_id=feed_id)}
    oldest = {f"guid-{n}" for n in range(10)}
    assert remaining.isdisjoint(oldest)
    assert oldest <= await db.execute('list_tombstone_guids', feed_id=feed_id)

    # Idempotent once under the cap
    assert await db.execute('enforce_item_limit', feed_id=feed_id, max_items=200) == 0
    assert await db.execute('upsert_items', feed_id=feed_id, entries=make_entries(210)) == 0


@pytest.mark.asyncio
async def test_item_limit_ranks_undated_items_by_creation_time(db):
    feed_id = await add_feed(db)
    dated_old = FeedEntry(guid="old", published_at=datetime(2001, 1, 1, tzinfo=timezone.utc))
    undated = FeedEntry(guid="undated")
    await db.execute('upsert_items', feed_id=feed_id, entries=[dated_old, undated])

    await db.execute('enforce_item_limit', feed_id=feed_id, max_items=1)

    assert [i.guid for i in await db.execute('list_items', feed_id=feed_id)] == ["undated"]


@pytest.mark.asyncio
async def test_cleanup_only_removes_items_read_before_retention(db):
    feed_id = await add_feed(db)
    await db.execute('upsert_items', feed_id=feed_id, entries=make_entries(3))
    items = sorted(await db.execute('list_items', feed_id=feed_id), key=lambda i: i.guid)
    now = utcnow()
    await db.execute('toggle_read', item_id=items[0].id, now=now - timedelta(minutes=90))
    await db.execute('toggle_read', item_id=items[1].id, now=now - timedelta(minutes=5))

    removed = await db.execute('cleanup_read_items', retention_minutes=30, now=now)

    assert removed == 1
    assert {i.guid for i in await db.execute('list_items', feed_id=feed_id)} == {"guid-1", "guid-2"}
    assert await db.execute('is_tombstoned', feed_id=feed_id, guid="guid-0")


@pytest.mark.asyncio
async def test_prune_tombstones_after_retention(db):
    feed_id = await add_feed(db)
    await db.execute('upsert_items', feed_id=feed_id, entries=make_entries(1))
    await db.execute('mark_all_read', feed_id=feed_id)
    await db.execute('sweep_read_items', feed_id=feed_id)

    assert await db.execute('prune_tombstones', retention_days=30) == 0
    later = utcnow() + timedelta(days=31)
    assert await db.execute('prune_tombstones', retention_days=30, now=later) == 1
    # An expired tombstone no longer blocks the guid
    assert await db.execute('upsert_items', feed_id=feed_id, entries=make_entries(1)) == 1


@pytest.mark.asyncio
async def test_upsert_feed_keeps_one_row_and_custom_title(db):
    feed_id = await add_feed(db, title="Original")
    assert await db.execute('update_feed_title', feed_id=feed_id, title="  Mine  ")

    again = await add_feed(db, title="Renamed Upstream")

    assert again == feed_id
    feeds = await db.execute('list_feeds')
    assert len(feeds) == 1
    assert feeds[0].title == "Mine"
    assert feeds[0].original_title == "Renamed Upstream"

    await db.execute('update_feed_title', feed_id=feed_id, title="   ")
    feed = await db.execute('get_feed', feed_id=feed_id)
    assert feed.title == "Renamed Upstream"
    assert feed.custom_title is None


@pytest.mark.asyncio
async def test_feed_order_merges_requested_and_remaining(db):
    a = await add_feed(db, url="https://a.example/feed", title="A")
    b = await add_feed(db, url="https://b.example/feed", title="B")
    c = await add_feed(db, url="https://c.example/feed", title="C")

    final = await db.execute('update_feed_order', ordered_feed_ids=[c, 999, c, a])

    assert final == [c, a, b]
    assert [f.id for f in await db.execute('list_feeds')] == [c, a, b]


@pytest.mark.asyncio
async def test_save_refresh_meta_keeps_validators_and_clears_error(db):
    feed_id = await add_feed(db)
    checked = utcnow().replace(microsecond=0)
    await db.execute('save_refresh_meta', feed_id=feed_id, meta=RefreshMeta(
        last_checked_at=checked, etag='"v1"', last_modified="lm", last_error="boom", unchanged_count=2,
    ))
    cache = await db.execute('get_cache_meta', feed_id=feed_id)
    assert (cache.etag, cache.last_modified, cache.unchanged_count) == ('"v1"', "lm", 2)

    await db.execute('save_refresh_meta', feed_id=feed_id, meta=RefreshMeta(
        last_checked_at=checked, etag="  ", last_error="", unchanged_count=-3,
    ))
    feed = await db.execute('get_feed', feed_id=feed_id)
    assert feed.etag == '"v1"'
    assert feed.last_modified == "lm"
    assert feed.last_error is None
    assert feed.unchanged_count == 0
    assert feed.last_refreshed_at == checked
    assert feed.next_refresh_at > checked


@pytest.mark.asyncio
async def test_save_refresh_meta_for_missing_feed(db):
    with pytest.raises(FeedNotFoundError):
        await db.execute('save_refresh_meta', feed_id=404, meta=RefreshMeta())


@pytest.mark.asyncio
async def test_list_due_feeds_orders_never_checked_first(db):
    now = utcnow()
    scheduled_past = await add_feed(db, url="https://a.example/feed")
    scheduled_future = await add_feed(db, url="https://b.example/feed")
    never_checked = await add_feed(db, url="https://c.example/feed")
    await db.execute('save_refresh_meta', feed_id=scheduled_past, meta=RefreshMeta(
        last_checked_at=now - timedelta(hours=1), next_refresh_at=now - timedelta(minutes=1),
    ))
    await db.execute('save_refresh_meta', feed_id=scheduled_future, meta=RefreshMeta(
        last_checked_at=now, next_refresh_at=now + timedelta(minutes=20),
    ))

    assert await db.execute('list_due_feeds', now=now, limit=5) == [never_checked, scheduled_past]
    assert await db.execute('list_due_feeds', now=now, limit=1) == [never_checked]


@pytest.mark.asyncio
async def test_items_after_and_mark_all_read(db):
    feed_id = await add_feed(db)
    await db.execute('upsert_items', feed_id=feed_id, entries=make_entries(2))
    newest_id = max(i.id for i in await db.execute('list_items', feed_id=feed_id))
    await db.execute('upsert_items', feed_id=feed_id, entries=make_entries(2, start=2))

    assert await db.execute('count_items_after', feed_id=feed_id, after_id=newest_id) == 2
    after = await db.execute('list_items_after', feed_id=feed_id, after_id=newest_id)
    assert [i.guid for i in after] == ["guid-3", "guid-2"]

    assert await db.execute('mark_all_read', feed_id=feed_id) == 4
    feed = await db.execute('get_feed', feed_id=feed_id)
    assert feed.unread_count == 0 and feed.item_count == 4

    item = await db.execute('get_item', item_id=newest_id)
    assert item.is_read
    assert await db.execute('toggle_read', item_id=newest_id) is False


@pytest.mark.asyncio
async def test_delete_feed_cascades(db):
    feed_id = await add_feed(db)
    await db.execute('upsert_items', feed_id=feed_id, entries=make_entries(2))
    await db.execute('enforce_item_limit', feed_id=feed_id, max_items=1)

    assert await db.execute('delete_feed', feed_id=feed_id)

    assert await db.execute('count_items') == 0
    assert await db.execute('list_tombstone_guids', feed_id=feed_id) == set()
    with pytest.raises(FeedNotFoundError):
        await db.execute('get_feed_url', feed_id=feed_id)


@pytest.mark.asyncio
async def test_missing_rows_raise_domain_errors(db):
    with pytest.raises(FeedNotFoundError):
        await db.execute('get_cache_meta', feed_id=1)
    with pytest.raises(ItemNotFoundError):
        await db.execute('get_item', item_id=1)


@pytest.mark.asyncio
async def test_sqlite_errors_become_storage_errors(db, monkeypatch):
    def broken(**params):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, 'count_items', broken)

    with pytest.raises(StorageError) as exc_info:
        await db.execute('count_items')
    assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)

    with pytest.raises(StorageError):
        await db.execute('no_such_operation')


@pytest.mark.asyncio
async def test_migrates_database_without_sort_order_or_tombstones(tmp_path):
    db_path = tmp_path / "old.db"
    conn = sqlite3.connect(db_path)
    conn.executescript("""
        CREATE TABLE feeds (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            url TEXT NOT NULL UNIQUE,
            title TEXT NOT NULL,
            custom_title TEXT,
            created_at INTEGER NOT NULL,
            etag TEXT,
            last_modified TEXT,
            last_refreshed_at INTEGER,
            last_error TEXT,
            unchanged_count INTEGER NOT NULL DEFAULT 0,
            next_refresh_at INTEGER
        );
        CREATE TABLE items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            feed_id INTEGER NOT NULL,
            guid TEXT NOT NULL,
            title TEXT NOT NULL,
            link TEXT NOT NULL,
            summary TEXT,
            content TEXT,
            published_at INTEGER,
            read_at INTEGER,
            created_at INTEGER NOT NULL,
            UNIQUE(feed_id, guid)
        );
        INSERT INTO feeds (url, title, created_at) VALUES ('https://z.example/feed', 'zeta', 0);
        INSERT INTO feeds (url, title, created_at) VALUES ('https://a.example/feed', 'Alpha', 0);
    """)
    conn.commit()
    conn.close()

    db = DatabaseQueue(str(db_path))
    await db.start()
    try:
        feeds = await db.execute('list_feeds')
        assert [(f.title, f.sort_order) for f in feeds] == [("Alpha", 1), ("zeta", 2)]
        assert await db.execute('list_tombstone_guids', feed_id=1) == set()
    finally:
        await db.stop()
