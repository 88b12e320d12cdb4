import json

from xraylink.profile import ServerProfile
from xraylink.store import ProfileStore


def _profile(pid, address="example.org", user="abc", port=443, name=""):
    return ServerProfile(id=pid, name=name, protocol="vless", address=address, port=port, user_id=user)


def _recorder(store):
    seen = []
    for event in ("inserted", "updated", "removed", "reset"):
        store.events.subscribe(event, lambda *args, _e=event: seen.append((_e,) + args[:1]))
    return seen


def test_add_appends_and_emits():
    store = ProfileStore()
    seen = _recorder(store)
    assert store.add_profile(_profile("a"))
    assert store.add_profile(_profile("b", address="other.org"))
    assert len(store) == 2
    assert seen == [("inserted", 0), ("inserted", 1)]


def test_equivalent_profile_replaces_in_place_and_keeps_identity():
    store = ProfileStore()
    store.add_profile(_profile("a", name="old"))
    store.add_profile(_profile("b", address="other.org"))
    store.set_ping_result(0, 55)
    seen = _recorder(store)

    assert store.add_profile(_profile("fresh-id", address="EXAMPLE.org", user="ABC", name="new"))
    assert len(store) == 2
    replaced = store.profile_at(0)
    assert replaced.name == "new"
    assert replaced.id == "a"
    assert replaced.last_ping_ms == 55
    assert seen == [("updated", 0)]


def test_equivalent_by_original_link():
    store = ProfileStore()
    first = _profile("a")
    first.original_link = "vless://abc@example.org:443#x"
    store.add_profile(first)
    second = _profile("b", address="moved.org")
    second.original_link = first.original_link
    store.add_profile(second)
    assert len(store) == 1
    assert store.profile_at(0).address == "moved.org"


def test_invalid_profile_is_rejected_without_mutation():
    store = ProfileStore()
    store.add_profile(_profile("a"))
    seen = _recorder(store)
    assert not store.add_profile(_profile("x", port=0))
    assert len(store) == 1
    assert seen == []


def test_remove_and_bounds():
    store = ProfileStore([_profile("a"), _profile("b", address="b.org")])
    seen = _recorder(store)
    assert not store.remove_at(5)
    assert store.remove_at(0)
    assert [p.id for p in store] == ["b"]
    assert seen == [("removed", 0)]
    assert store.profile_at(-1) is None
    assert store.index_of_id("b") == 0
    assert store.index_of_id("") == -1


def test_ping_state_transitions():
    store = ProfileStore([_profile("a")])
    seen = _recorder(store)
    store.set_pinging(0, True)
    assert store.profile_at(0).ping_in_progress
    store.set_ping_result(0, -5)
    profile = store.profile_at(0)
    assert not profile.ping_in_progress
    assert profile.last_ping_ms == -1
    assert seen == [("updated", 0), ("updated", 0)]
    assert not store.set_ping_result(3, 10)


def test_save_and_load(tmp_path):
    path = tmp_path / "profiles.json"
    store = ProfileStore([_profile("a", name="one"), _profile("b", address="b.org")])
    store.save(str(path))

    data = json.loads(path.read_text(encoding="utf8"))
    data.append({"protocol": "vless", "address": "broken"})
    path.write_text(json.dumps(data), encoding="utf8")

    loaded = ProfileStore()
    assert loaded.load(str(path)) == 2
    assert [p.id for p in loaded] == ["a", "b"]
    assert loaded.profile_at(0).name == "one"


def test_load_missing_or_corrupt_file(tmp_path):
    store = ProfileStore([_profile("a")])
    assert store.load(str(tmp_path / "missing.json")) == 0
    assert len(store) == 0

    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{not json", encoding="utf8")
    assert store.load(str(corrupt)) == 0
