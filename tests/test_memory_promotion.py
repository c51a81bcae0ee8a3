from core.services import memory_hierarchy as hierarchy
from core.services import memory_promotion as promotion
from core.services import memory_telemetry as telemetry


def _touch(memory_id, times):
    for _ in range(times):
        telemetry.record_access(memory_id, "reader", 0)


def test_hot_lists_children_read_more_than_parent(server_db):
    root_id = hierarchy.memory_create(title="Root")["id"]
    hot_id = hierarchy.memory_add_sub(parent_id=root_id, title="Hot", summary="s")["id"]
    tie_id = hierarchy.memory_add_sub(parent_id=root_id, title="Tie", summary="s")["id"]
    cold_id = hierarchy.memory_add_sub(parent_id=root_id, title="Cold", summary="s")["id"]
    hotter_id = hierarchy.memory_add_sub(parent_id=hot_id, title="Hotter", summary="s")["id"]

    _touch(root_id, 2)
    _touch(hot_id, 3)
    _touch(tie_id, 2)
    _touch(cold_id, 1)
    _touch(hotter_id, 5)

    result = promotion.memory_hot(min_depth=1, limit=10)
    assert result["status"] == "ok"
    assert [item["id"] for item in result["candidates"]] == [hotter_id, hot_id]

    top = result["candidates"][0]
    assert top["depth"] == 2
    assert top["access_count"] == 5
    assert top["parent_id"] == hot_id
    assert top["parent_title"] == "Hot"
    assert top["parent_access_count"] == 3


def test_hot_respects_min_depth_and_limit(server_db):
    root_id = hierarchy.memory_create(title="Root")["id"]
    child_id = hierarchy.memory_add_sub(parent_id=root_id, title="Child", summary="s")["id"]
    grandchild_id = hierarchy.memory_add_sub(parent_id=child_id, title="Grandchild", summary="s")["id"]
    _touch(child_id, 1)
    _touch(grandchild_id, 2)

    assert [item["id"] for item in promotion.memory_hot(min_depth=2)["candidates"]] == [grandchild_id]
    assert promotion.memory_hot(min_depth=1, limit=1)["count"] == 1


def test_hot_ignores_roots(server_db):
    root_id = hierarchy.memory_create(title="Lonely root")["id"]
    _touch(root_id, 4)
    assert promotion.memory_hot(min_depth=0)["candidates"] == []


def test_hot_validates_limit(server_db):
    result = promotion.memory_hot(limit=0)
    assert result["status"] == "error"
    assert result["field"] == "limit"
