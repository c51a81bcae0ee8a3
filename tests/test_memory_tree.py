import pytest

from core import pointer_block
from core.errors import MemoryNotFoundError
from core.models import Shard
from core.services import memory_hierarchy as hierarchy
from core.services import memory_telemetry as telemetry
from core.services import memory_tree as tree


@pytest.fixture()
def small_tree(server_db):
    root_id = hierarchy.memory_create(title="R", body="Root body")["id"]
    c1_id = hierarchy.memory_add_sub(parent_id=root_id, title="C1", summary="first child", body="C1 body")["id"]
    g_id = hierarchy.memory_add_sub(parent_id=c1_id, title="G", summary="grandchild", body="G body")["id"]
    return {"R": root_id, "C1": c1_id, "G": g_id}


def _access_counts(reload_shard, ids):
    return {name: reload_shard(memory_id).access_count for name, memory_id in ids.items()}


def test_expand_materializes_and_touches_each_node_once(small_tree, reload_shard):
    result = tree.memory_expand(memory_id=small_tree["R"], max_depth=2)
    assert result["status"] == "ok"

    root = result["memory"]
    assert root["id"] == small_tree["R"]
    assert root["content"] == "Root body"
    assert root["expanded"] is True
    [c1] = root["children"]
    assert c1["id"] == small_tree["C1"]
    assert c1["depth"] == 1
    assert c1["expanded"] is True
    [g] = c1["children"]
    assert g["id"] == small_tree["G"]
    assert g["depth"] == 2
    assert g["content"] == "G body"

    assert _access_counts(reload_shard, small_tree) == {"R": 1, "C1": 1, "G": 1}
    g_log = reload_shard(small_tree["G"]).metadata_["access_log"]
    assert g_log[0]["depth"] == 2


def test_expand_stops_at_depth_and_shows_pointer_entries(small_tree, reload_shard):
    result = tree.memory_expand(memory_id=small_tree["R"], max_depth=1)
    [c1] = result["memory"]["children"]
    assert c1["expanded"] is False
    assert c1["children"] == [
        {"id": small_tree["G"], "title": "G", "summary": "grandchild", "expanded": False}
    ]
    assert _access_counts(reload_shard, small_tree) == {"R": 1, "C1": 1, "G": 0}


def test_expand_zero_depth_reads_only_start_node(small_tree, reload_shard):
    result = tree.memory_expand(memory_id=small_tree["C1"], max_depth=0)
    node = result["memory"]
    assert node["depth"] == 1
    assert node["content"] == "C1 body"
    assert [child["id"] for child in node["children"]] == [small_tree["G"]]
    assert _access_counts(reload_shard, small_tree) == {"R": 0, "C1": 1, "G": 0}


def test_expand_rejects_out_of_range_depth(small_tree):
    result = tree.memory_expand(memory_id=small_tree["R"], max_depth=6)
    assert result["status"] == "error"
    assert result["field"] == "max_depth"


def test_expand_reports_malformed_block(server_db, db_session):
    db_session.add(
        Shard(
            id="pf-broken",
            project="default",
            type="memory",
            title="Broken",
            content=f"Body\n{pointer_block.SUB_MEMORY_START}\n[",
            metadata_={},
        )
    )
    db_session.commit()

    node = tree.memory_expand(memory_id="pf-broken", max_depth=0)["memory"]
    assert "pointer_block_error" in node
    assert node["children"] == []


def test_path_is_root_first(small_tree):
    result = tree.memory_path(memory_id=small_tree["G"])
    assert [(item["id"], item["depth"]) for item in result["path"]] == [
        (small_tree["R"], 0),
        (small_tree["C1"], 1),
        (small_tree["G"], 2),
    ]
    assert result["depth"] == 2
    assert result["complete"] is True


def test_path_of_root(small_tree):
    result = tree.memory_path(memory_id=small_tree["R"])
    assert [item["id"] for item in result["path"]] == [small_tree["R"]]
    assert result["depth"] == 0


def test_path_unknown_memory(server_db):
    with pytest.raises(MemoryNotFoundError):
        tree.memory_path(memory_id="pf-missing")


def test_tree_flat_has_depth_counts_and_summaries(small_tree):
    other_root = hierarchy.memory_create(title="Other")["id"]

    result = tree.memory_tree()
    assert result["count"] == 4
    by_id = {node["id"]: node for node in result["nodes"]}
    assert by_id[small_tree["R"]]["depth"] == 0
    assert by_id[small_tree["R"]]["child_count"] == 1
    assert by_id[small_tree["G"]]["depth"] == 2
    assert by_id[small_tree["G"]]["child_count"] == 0
    assert by_id[small_tree["C1"]]["summary"] == "first child"
    assert by_id[other_root]["summary"] is None


def test_tree_from_root_with_max_depth(small_tree):
    hierarchy.memory_create(title="Other")

    result = tree.memory_tree(root_id=small_tree["R"], max_depth=1)
    assert [node["id"] for node in result["nodes"]] == [small_tree["R"], small_tree["C1"]]


def test_tree_skips_closed_nodes(small_tree, db_session):
    shard = db_session.query(Shard).filter(Shard.id == small_tree["C1"]).one()
    shard.status = "closed"
    db_session.commit()

    result = tree.memory_tree(root_id=small_tree["R"])
    assert [node["id"] for node in result["nodes"]] == [small_tree["R"]]


def test_tree_nested_and_text(small_tree):
    for _ in range(2):
        telemetry.record_access(small_tree["C1"], "reader", 1)

    nested = tree.memory_tree(output_format="nested")["tree"]
    assert nested[0]["id"] == small_tree["R"]
    assert nested[0]["children"][0]["children"][0]["id"] == small_tree["G"]

    text = tree.memory_tree(output_format="text", show_stats=True)["text"]
    lines = text.splitlines()
    assert lines[0].startswith(f"R ({small_tree['R']})")
    assert lines[1].startswith(f"└── C1 ({small_tree['C1']})")
    assert lines[1].endswith("★")
    assert lines[2].startswith(f"    └── G ({small_tree['G']})")
    assert "★" not in lines[2]


def test_tree_rejects_unknown_format(small_tree):
    result = tree.memory_tree(output_format="xml")
    assert result["status"] == "error"


def test_children_lists_real_children(small_tree):
    result = tree.memory_children(parent_id=small_tree["R"], include_content=True)
    assert result["count"] == 1
    child = result["children"][0]
    assert child["id"] == small_tree["C1"]
    assert child["child_count"] == 1
    assert child["content"].startswith("C1 body")
