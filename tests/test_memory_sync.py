from core import pointer_block
from core.audit_constants import EVENT_MEMORY_POINTERS_SYNCED
from core.models import AuditEvent, Shard
from core.services import memory_hierarchy as hierarchy
from core.services import memory_sync as sync
from core.services.memory_shared import SYNC_PLACEHOLDER_SUMMARY


def _drifted_parent(db_session):
    """A parent with one real child missing from its block and one stale entry."""
    parent_id = hierarchy.memory_create(title="Parent", body="Parent body")["id"]
    kept_id = hierarchy.memory_add_sub(parent_id=parent_id, title="Kept", summary="kept summary")["id"]

    db_session.add(
        Shard(
            id="pf-unlisted",
            project="default",
            type="memory",
            title="Unlisted",
            content="",
            parent_id=parent_id,
            metadata_={},
        )
    )
    parent = db_session.query(Shard).filter(Shard.id == parent_id).one()
    parent.content = pointer_block.append(
        parent.content,
        pointer_block.PointerEntry(id="pf-gone", title="Gone", summary="moved elsewhere"),
    )
    db_session.commit()
    return parent_id, kept_id


def test_dry_run_reports_without_mutating(server_db, db_session, reload_shard):
    parent_id, _ = _drifted_parent(db_session)
    before = reload_shard(parent_id).content

    result = sync.memory_sync(parent_id=parent_id, dry_run=True)
    assert result["dry_run"] is True
    assert result["fixed"] is False
    assert sorted((item["type"], item["child"]) for item in result["discrepancies"]) == [
        ("missing_pointer", "pf-unlisted"),
        ("stale_pointer", "pf-gone"),
    ]
    assert reload_shard(parent_id).content == before


def test_repair_fixes_both_in_one_pass(server_db, db_session, reload_shard):
    parent_id, kept_id = _drifted_parent(db_session)

    result = sync.memory_sync(parent_id=parent_id)
    assert result["status"] == "ok"
    assert result["fixed"] is True
    assert result["parents_repaired"] == [{"parent": parent_id, "added": 1, "removed": 1}]

    main, entries = pointer_block.parse(reload_shard(parent_id).content)
    assert main == "Parent body"
    assert [(entry.id, entry.summary) for entry in entries] == [
        (kept_id, "kept summary"),
        ("pf-unlisted", SYNC_PLACEHOLDER_SUMMARY),
    ]

    again = sync.memory_sync(parent_id=parent_id)
    assert again["discrepancies"] == []
    assert again["fixed"] is False

    events = db_session.query(AuditEvent).filter(AuditEvent.event_type == EVENT_MEMORY_POINTERS_SYNCED).all()
    assert len(events) == 1


def test_sync_all_parents_and_empty_block_removal(server_db, db_session, reload_shard):
    parent_id, _ = _drifted_parent(db_session)
    orphan_block_id = hierarchy.memory_create(title="Emptied", body="Only text")["id"]
    emptied = db_session.query(Shard).filter(Shard.id == orphan_block_id).one()
    emptied.content = pointer_block.append(emptied.content, pointer_block.PointerEntry(id="pf-old", title="Old"))
    db_session.commit()
    hierarchy.memory_create(title="Untouched root")

    result = sync.memory_sync()
    assert result["parents_checked"] == 2
    assert set(result["by_parent"]) == {parent_id, orphan_block_id}
    assert reload_shard(orphan_block_id).content == "Only text"


def test_malformed_block_is_reported_not_rewritten(server_db, db_session, reload_shard):
    parent_id = hierarchy.memory_create(title="Broken parent")["id"]
    hierarchy.memory_add_sub(parent_id=parent_id, title="Child", summary="s")
    broken = db_session.query(Shard).filter(Shard.id == parent_id).one()
    broken.content = f"Body\n{pointer_block.SUB_MEMORY_START}\n[{{\"id\": "
    db_session.commit()
    healthy_id, _ = _drifted_parent(db_session)

    result = sync.memory_sync()
    assert result["status"] == "partial"
    assert [failure["parent"] for failure in result["failures"]] == [parent_id]
    assert result["failures"][0]["error_type"] == "malformed_block"
    assert any(item["type"] == "malformed_block" for item in result["by_parent"][parent_id])
    assert reload_shard(parent_id).content == broken.content
    assert [item["parent"] for item in result["parents_repaired"]] == [healthy_id]


def test_diff_and_reconcile_helpers():
    entries = [
        pointer_block.PointerEntry(id="a", title="A", summary="sa"),
        pointer_block.PointerEntry(id="b", title="B", summary="sb"),
    ]
    children = [Shard(id="b", title="B"), Shard(id="c", title="C")]

    diff = sync.diff_pointers("p", entries, children)
    assert [(item["type"], item["child"]) for item in diff] == [
        ("missing_pointer", "c"),
        ("stale_pointer", "a"),
    ]
    assert [entry.id for entry in sync.reconcile_entries(entries, children)] == ["b", "c"]
