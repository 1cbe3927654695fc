import pytest

from sparklane.store import DatabaseError, Db


@pytest.fixture
def db(tmp_path):
    return Db(tmp_path / "store.sqlite")


@pytest.mark.asyncio
async def test_get_missing_returns_none(db):
    assert await db.get("nothing-here") is None


@pytest.mark.asyncio
async def test_insert_then_get_round_trip(db):
    await db.insert("instance:abc", b'{"id":"abc"}')
    assert await db.get("instance:abc") == b'{"id":"abc"}'


@pytest.mark.asyncio
async def test_insert_overwrites(db):
    await db.insert("k", b"first")
    await db.insert("k", b"second")
    assert await db.get("k") == b"second"


@pytest.mark.asyncio
async def test_values_persist_across_instances(tmp_path):
    path = tmp_path / "shared.sqlite"
    await Db(path).insert("quick-fox", b"\x00\x01\xff")
    assert await Db(path).get("quick-fox") == b"\x00\x01\xff"


@pytest.mark.asyncio
async def test_scan_prefix_returns_sorted_matches_only(db):
    await db.insert("instance:b", b"2")
    await db.insert("instance:a", b"1")
    await db.insert("vm:a", b"other")
    await db.insert("instancf", b"outside")
    result = await db.scan_prefix("instance:")
    assert result == [(b"instance:a", b"1"), (b"instance:b", b"2")]


@pytest.mark.asyncio
async def test_scan_prefix_empty_when_nothing_matches(db):
    await db.insert("vm:a", b"x")
    assert await db.scan_prefix("instance:") == []


@pytest.mark.asyncio
async def test_remove_deletes_key(db):
    await db.insert("gone", b"soon")
    await db.remove("gone")
    assert await db.get("gone") is None


@pytest.mark.asyncio
async def test_remove_missing_key_leaves_others(db):
    await db.insert("kept", b"yes")
    await db.remove("absent")
    assert await db.get("kept") == b"yes"


@pytest.mark.asyncio
async def test_unusable_path_raises_database_error(tmp_path):
    broken = Db(tmp_path)  # a directory cannot be opened as a database
    with pytest.raises(DatabaseError):
        await broken.get("key")
    with pytest.raises(DatabaseError):
        await broken.insert("key", b"value")