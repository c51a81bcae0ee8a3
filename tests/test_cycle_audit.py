from core.models import Shard
from core.services import memory_hierarchy as hierarchy


def test_find_cycles_reports_each_problem():
    parents = {
        "root": None,
        "child": "root",
        "loop-a": "loop-b",
        "loop-b": "loop-a",
        "orphan": "pf-missing",
    }
    problems = {(item["id"], item["problem"]) for item in hierarchy.find_cycles(parents)}
    assert problems == {
        ("loop-a", "cycle"),
        ("loop-b", "cycle"),
        ("orphan", "dangling_parent"),
    }


def test_find_cycles_depth_cap():
    parents = {"n0": None}
    for index in range(1, hierarchy.TRAVERSAL_DEPTH_CAP + 3):
        parents[f"n{index}"] = f"n{index - 1}"
    problems = hierarchy.find_cycles(parents)
    assert {item["problem"] for item in problems} == {"depth_exceeded"}
    assert {item["id"] for item in problems} == {
        f"n{index}" for index in range(hierarchy.TRAVERSAL_DEPTH_CAP + 1, hierarchy.TRAVERSAL_DEPTH_CAP + 3)
    }


def test_cycle_audit_clean_tree(server_db):
    root_id = hierarchy.memory_create(title="Root")["id"]
    hierarchy.memory_add_sub(parent_id=root_id, title="Child", summary="s")

    result = hierarchy.memory_cycle_audit()
    assert result["status"] == "ok"
    assert result["checked"] == 2
    assert result["problems"] == []


def test_cycle_audit_finds_loop_written_behind_its_back(server_db, db_session):
    a_id = hierarchy.memory_create(title="A")["id"]
    b_id = hierarchy.memory_add_sub(parent_id=a_id, title="B", summary="s")["id"]
    a = db_session.query(Shard).filter(Shard.id == a_id).one()
    a.parent_id = b_id
    db_session.commit()

    result = hierarchy.memory_cycle_audit()
    assert result["status"] == "problems_found"
    assert {item["id"] for item in result["problems"]} == {a_id, b_id}
