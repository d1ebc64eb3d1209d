import random

import pytest

from axon.errors import ProtocolError
from axon.mirror import StateMirror
from axon.models import ResourceKind, Status, Update

TORRENT = ResourceKind.TORRENT
TRACKER = ResourceKind.TRACKER


def _expected(updates):
    state = {}
    for update in updates:
        key = (update.kind, update.id)
        if update.operation.value == "remove":
            state.pop(key, None)
        else:
            state.setdefault(key, {}).update(update.fields)
    return state


def _stream(seed):
    rng = random.Random(seed)
    updates = []
    for _ in range(200):
        tid = f"t{rng.randint(1, 5)}"
        if rng.random() < 0.15:
            updates.append(Update.remove(TORRENT, tid))
            continue
        fields = {}
        if rng.random() < 0.6:
            fields["name"] = rng.choice(["alpha", "beta", "gamma"])
        if rng.random() < 0.6:
            fields["progress"] = float(rng.randint(0, 100))
        if rng.random() < 0.6:
            fields["size"] = rng.randint(1, 10) * 1024
        if rng.random() < 0.4:
            fields["status"] = rng.choice(["leeching", "seeding", "error"])
        if rng.random() < 0.4:
            fields["error"] = rng.choice(["disk full", "tracker gone", None])
        updates.append(Update.upsert(TORRENT, tid, **fields))
    return updates


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_final_state_is_last_write_per_field_regardless_of_batching(seed) -> None:
    updates = _stream(seed)
    one_by_one = StateMirror()
    for update in updates:
        one_by_one.apply_update(update)

    batched = StateMirror()
    rng = random.Random(seed)
    pos = 0
    while pos < len(updates):
        size = rng.randint(1, 17)
        batched.apply_updates(updates[pos : pos + size])
        pos += size

    expected = _expected(updates)
    for mirror in (one_by_one, batched):
        torrents = mirror.snapshot.torrents
        assert set(torrents) == {rid for (_, rid) in expected}
        for (_, rid), fields in expected.items():
            for key, value in fields.items():
                assert getattr(torrents[rid], key) == value
    assert one_by_one.snapshot.torrents == batched.snapshot.torrents
    assert one_by_one.version == batched.version == len(updates)


def test_partial_upserts_merge_fields() -> None:
    mirror = StateMirror()
    mirror.apply_update(Update.upsert(TORRENT, "1", name="Foo", status="pending"))
    mirror.apply_update(Update.upsert(TORRENT, "1", status="hashing"))
    torrent = mirror.snapshot.torrents["1"]
    assert torrent.name == "Foo"
    assert torrent.status is Status.HASHING


def test_published_snapshots_are_never_mutated() -> None:
    mirror = StateMirror()
    mirror.apply_update(Update.upsert(TORRENT, "1", name="old", progress=10))
    before = mirror.snapshot
    mirror.apply_update(Update.upsert(TORRENT, "1", name="new", progress=90))
    mirror.apply_update(Update.upsert(TORRENT, "2", name="other"))
    assert before.torrents["1"].name == "old"
    assert before.torrents["1"].progress == 10
    assert "2" not in before.torrents
    assert mirror.snapshot.version == before.version + 2
    with pytest.raises(TypeError):
        mirror.snapshot.torrents["3"] = before.torrents["1"]


def test_remove_drops_backreferences() -> None:
    mirror = StateMirror()
    mirror.apply_update(Update.upsert(TRACKER, "tr", host="example.com", torrent_ids=["1", "2"]))
    mirror.apply_update(Update.upsert(TORRENT, "1", name="a", trackers=["tr"]))
    mirror.apply_update(Update.upsert(TORRENT, "2", name="b", trackers=["tr"]))

    mirror.apply_update(Update.remove(TORRENT, "1"))
    assert mirror.snapshot.trackers["tr"].torrent_ids == frozenset({"2"})

    mirror.apply_update(Update.remove(TRACKER, "tr"))
    assert mirror.snapshot.torrents["2"].trackers == frozenset()
    assert "tr" not in mirror.snapshot.trackers


def test_replace_drops_resources_missing_from_new_snapshot() -> None:
    mirror = StateMirror()
    mirror.apply_update(Update.upsert(TORRENT, "gone", name="stale"))
    mirror.replace([Update.upsert(TORRENT, "kept", name="fresh")])
    assert set(mirror.snapshot.torrents) == {"kept"}


def test_bad_update_is_rejected_whole() -> None:
    mirror = StateMirror()
    mirror.apply_update(Update.upsert(TORRENT, "1", name="Foo", progress=5))
    with pytest.raises(ProtocolError):
        mirror.apply_update(Update.upsert(TORRENT, "1", name="Bar", progress="lots"))
    assert mirror.snapshot.torrents["1"].name == "Foo"


def test_batch_skips_invalid_update_only() -> None:
    mirror = StateMirror()
    mirror.apply_updates(
        [
            Update.upsert(TORRENT, "1", name="one"),
            Update.upsert(TORRENT, "2", size=-4),
            Update.upsert(TORRENT, "3", name="three"),
        ]
    )
    assert set(mirror.snapshot.torrents) == {"1", "3"}
    assert mirror.version == 2


def test_field_normalisation() -> None:
    mirror = StateMirror()
    mirror.apply_update(Update.upsert(TORRENT, "1", status="error", error="disk full", progress=140, color="red"))
    torrent = mirror.snapshot.torrents["1"]
    assert torrent.error == "disk full"
    assert torrent.progress == 100.0

    mirror.apply_update(Update.upsert(TORRENT, "1", status="seeding"))
    assert mirror.snapshot.torrents["1"].error_message is None


def test_error_written_before_status_survives() -> None:
    mirror = StateMirror()
    mirror.apply_update(Update.upsert(TORRENT, "1", name="iso", status="leeching"))
    mirror.apply_update(Update.upsert(TORRENT, "1", error="disk full"))
    assert mirror.snapshot.torrents["1"].error_message is None

    mirror.apply_update(Update.upsert(TORRENT, "1", status="error"))
    torrent = mirror.snapshot.torrents["1"]
    assert torrent.status is Status.ERROR
    assert torrent.error == torrent.error_message == "disk full"
    assert mirror.snapshot.errors_of(torrent) == ["disk full"]


@pytest.mark.parametrize(
    "fields",
    [
        {"size": 1.5},
        {"peers": True},
        {"private": 1},
        {"status": "stalled"},
        {"trackers": "tr1"},
        {"throttle_up": -2},
        {"name": 7},
    ],
)
def test_wire_types_are_checked_strictly(fields) -> None:
    mirror = StateMirror()
    with pytest.raises(ProtocolError):
        mirror.apply_update(Update.upsert(TORRENT, "1", **fields))
    assert "1" not in mirror.snapshot.torrents


def test_null_text_and_id_lists_become_empty() -> None:
    mirror = StateMirror()
    mirror.apply_update(Update.upsert(TORRENT, "1", name="x", trackers=["a"]))
    mirror.apply_update(Update.upsert(TORRENT, "1", name=None, trackers=None, size=None))
    torrent = mirror.snapshot.torrents["1"]
    assert (torrent.name, torrent.trackers, torrent.size) == ("", frozenset(), None)


def test_server_resource_is_a_singleton() -> None:
    mirror = StateMirror()
    mirror.apply_update(Update.upsert(ResourceKind.SERVER, "srv", rate_up=10, throttle_down=-1))
    mirror.apply_update(Update.upsert(ResourceKind.SERVER, "srv", rate_down=20))
    server = mirror.snapshot.server
    assert (server.rate_up, server.rate_down, server.throttle_down) == (10, 20, -1)
