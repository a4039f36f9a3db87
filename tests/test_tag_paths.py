import pytest

from command_catalog.core.tag_paths import build_forest, resolve_path, split_tag_path
from command_catalog.core.types import Tag


def test_split_tag_path_normalises_segments():
    assert split_tag_path("Routing/IPv4") == ("Routing", "IPv4")
    assert split_tag_path(" a //  b   c / ") == ("a", "b c")
    assert split_tag_path("") == ()
    assert split_tag_path(None) == ()
    assert split_tag_path("///") == ()


def test_resolve_path_creates_missing_tags_in_order(storage, cisco):
    resolved = resolve_path(storage, cisco.id, None, ["Routing", "IPv4"])
    assert [tag.name for tag in resolved.created] == ["Routing", "IPv4"]
    assert resolved.created[0].parent_id is None
    assert resolved.created[0].parent_name is None
    assert resolved.created[1].parent_name == "Routing"
    leaf = storage.get_tag(resolved.leaf_id)
    assert leaf.name == "IPv4"
    assert leaf.parent_id == resolved.created[0].id


def test_resolve_path_is_idempotent(storage, cisco):
    first = resolve_path(storage, cisco.id, None, ["Routing", "IPv4"])
    second = resolve_path(storage, cisco.id, None, ["Routing", "IPv4"])
    assert second.leaf_id == first.leaf_id
    assert second.created == ()
    assert storage.count_tags(cisco.id) == 2


def test_resolve_path_under_root(storage, cisco):
    core = storage.create_tag(cisco.id, "Cisco-Core")
    resolved = resolve_path(storage, cisco.id, core.id, ["Time"])
    assert resolved.created[0].parent_name == "Cisco-Core"
    assert storage.get_tag(resolved.leaf_id).parent_id == core.id

    # An empty path below a root resolves to the root itself.
    empty = resolve_path(storage, cisco.id, core.id, [])
    assert empty.leaf_id == core.id
    assert empty.created == ()


def test_resolve_path_reuses_partial_prefix(storage, cisco):
    resolve_path(storage, cisco.id, None, ["Routing", "IPv4"])
    resolved = resolve_path(storage, cisco.id, None, ["Routing", "IPv6"])
    assert [tag.name for tag in resolved.created] == ["IPv6"]
    assert resolved.created[0].parent_name == "Routing"


def test_resolve_path_rejects_bad_roots(storage, cisco, juniper):
    with pytest.raises(ValueError):
        resolve_path(storage, cisco.id, None, [])
    with pytest.raises(ValueError):
        resolve_path(storage, cisco.id, 999, ["x"])
    foreign = storage.create_tag(juniper.id, "Security")
    with pytest.raises(ValueError):
        resolve_path(storage, cisco.id, foreign.id, ["x"])


def test_resolve_path_adopts_concurrently_created_tag(storage, cisco, monkeypatch):
    winner = storage.create_tag(cisco.id, "Routing")
    real_find = storage.find_sibling_tag
    calls = {"n": 0}

    def stale_find(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_find(*args, **kwargs)

    monkeypatch.setattr(storage, "find_sibling_tag", stale_find)
    resolved = resolve_path(storage, cisco.id, None, ["Routing"])
    assert resolved.leaf_id == winner.id
    assert resolved.created == ()
    assert storage.count_tags(cisco.id) == 1


def test_build_forest_treats_orphans_as_roots():
    tags = [
        Tag(id=1, name="b", vendor_id=1, parent_id=None),
        Tag(id=2, name="a", vendor_id=1, parent_id=None),
        Tag(id=3, name="leaf", vendor_id=1, parent_id=1),
        Tag(id=4, name="orphan", vendor_id=1, parent_id=99),
    ]
    forest = build_forest(tags)
    assert [node["name"] for node in forest] == ["a", "b", "orphan"]
    assert forest[1]["children"] == [{"id": 3, "name": "leaf", "children": []}]
