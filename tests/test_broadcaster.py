import asyncio
import json
import os
import sys
import threading
from pathlib import Path

project_root = str(Path(__file__).resolve().parents[1])
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from filedrop import storage, watcher  # noqa: E402
from filedrop.services import broadcaster as broadcasting  # noqa: E402


def make_broadcaster(upload_dir, queue_size=8):
    return broadcasting.ChangeBroadcaster(lambda: storage.list_stored_files(str(upload_dir)), queue_size=queue_size)


async def next_payload(subscriber, timeout=1.0):
    return json.loads(await asyncio.wait_for(subscriber.get(), timeout=timeout))


def store(upload_dir, name, data, mtime):
    path = Path(upload_dir) / name
    path.write_bytes(data)
    os.utime(path, (mtime, mtime))


def test_subscribe_pushes_current_listing_immediately(tmp_path):
    store(tmp_path, "existing.txt", b"abc", 1_700_000_000)
    hub = make_broadcaster(tmp_path)

    async def scenario():
        subscriber = hub.subscribe()
        return await next_payload(subscriber)

    listing = asyncio.run(scenario())
    assert [entry["name"] for entry in listing] == ["existing.txt"]
    assert listing[0]["size"] == 3
    assert hub.subscriber_count == 1


def test_change_reaches_every_subscriber_with_identical_payload(tmp_path):
    hub = make_broadcaster(tmp_path)

    async def scenario():
        first, second = hub.subscribe(), hub.subscribe()
        await next_payload(first)
        await next_payload(second)
        store(tmp_path, "fresh.txt", b"new", 1_700_000_000)
        delivered = hub.on_directory_changed()
        return delivered, await first.get(), await second.get()

    delivered, payload_a, payload_b = asyncio.run(scenario())
    assert delivered == 2
    assert payload_a == payload_b
    assert json.loads(payload_a)[0]["name"] == "fresh.txt"


def test_dead_subscriber_does_not_block_others(tmp_path):
    hub = make_broadcaster(tmp_path)

    async def subscribe_and_leave():
        return hub.subscribe()

    # asyncio.run closes its loop on exit, leaving a subscriber nobody serves
    asyncio.run(subscribe_and_leave())
    assert hub.subscriber_count == 1

    async def scenario():
        live = hub.subscribe()
        await next_payload(live)
        delivered = hub.on_directory_changed()
        return delivered, await next_payload(live)

    delivered, listing = asyncio.run(scenario())
    assert delivered == 1
    assert listing == []
    assert hub.subscriber_count == 1


def test_unsubscribed_connection_gets_no_more_pushes(tmp_path):
    hub = make_broadcaster(tmp_path)

    async def scenario():
        subscriber = hub.subscribe()
        await next_payload(subscriber)
        hub.unsubscribe(subscriber)
        hub.unsubscribe(subscriber)
        delivered = hub.on_directory_changed()
        await asyncio.sleep(0.01)
        return delivered, subscriber.queue.empty()

    delivered, empty = asyncio.run(scenario())
    assert delivered == 0
    assert empty
    assert hub.subscriber_count == 0


def test_slow_subscriber_keeps_only_newest_snapshots(tmp_path):
    hub = make_broadcaster(tmp_path, queue_size=1)

    async def scenario():
        subscriber = hub.subscribe()
        hub.publish('["stale"]')
        hub.publish('["latest"]')
        await asyncio.sleep(0.01)
        return subscriber.queue.qsize(), await subscriber.get()

    size, payload = asyncio.run(scenario())
    assert size == 1
    assert payload == '["latest"]'


def test_upload_after_subscribe_yields_exactly_one_push(tmp_path):
    store(tmp_path, "older.txt", b"old", 1_700_000_000)
    hub = make_broadcaster(tmp_path)
    dir_watcher = watcher.DirectoryWatcher(str(tmp_path), hub)

    async def scenario():
        subscriber = hub.subscribe()
        initial = await next_payload(subscriber)

        sink = storage.UploadSink.open(str(tmp_path), "newest.txt", max_bytes=1024)
        sink.write(b"hello")
        sink.close()

        assert dir_watcher.check() is True
        assert dir_watcher.check() is False
        update = await next_payload(subscriber)
        await asyncio.sleep(0.01)
        return initial, update, subscriber.queue.empty()

    initial, update, drained = asyncio.run(scenario())
    assert [entry["name"] for entry in initial] == ["older.txt"]
    assert [entry["name"] for entry in update] == ["newest.txt", "older.txt"]
    assert drained


def test_stream_snapshots_emits_frames_and_unsubscribes(tmp_path):
    hub = make_broadcaster(tmp_path)
    disconnect_checks = iter([False, True])

    async def is_disconnected():
        return next(disconnect_checks)

    async def scenario():
        return [frame async for frame in broadcasting.stream_snapshots(hub, is_disconnected, heartbeat=0.01)]

    frames = asyncio.run(scenario())
    assert frames == ["data: []\n\n", ": keepalive\n\n"]
    assert hub.subscriber_count == 0


def test_stream_snapshots_reads_listing_off_the_event_loop(tmp_path):
    store(tmp_path, "existing.txt", b"abc", 1_700_000_000)
    snapshot_threads = []

    def snapshot():
        snapshot_threads.append(threading.get_ident())
        return storage.list_stored_files(str(tmp_path))

    hub = broadcasting.ChangeBroadcaster(snapshot)

    async def is_disconnected():
        return True

    async def scenario():
        frames = [frame async for frame in broadcasting.stream_snapshots(hub, is_disconnected, heartbeat=0.01)]
        return frames, threading.get_ident()

    frames, loop_thread = asyncio.run(scenario())
    assert len(frames) == 1
    assert [entry["name"] for entry in json.loads(frames[0][len("data: "):])] == ["existing.txt"]
    assert snapshot_threads and loop_thread not in snapshot_threads
