def test_core_imports():
    import core.context  # noqa: F401
    import core.models  # noqa: F401
    import core.pointer_block  # noqa: F401
    import core.services.memory_hierarchy  # noqa: F401
    import core.services.memory_sync  # noqa: F401


def test_core_smoke_lifecycle(server_db):
    from core.services import memory_hierarchy, memory_promotion, memory_sync, memory_tree

    root = memory_hierarchy.memory_create(title="Core smoke root", body="root")
    child = memory_hierarchy.memory_add_sub(
        parent_id=root["id"],
        title="Core smoke child",
        summary="read when smoke testing",
    )
    assert child["depth"] == 1

    expanded = memory_tree.memory_expand(memory_id=child["id"], max_depth=1)
    assert expanded["memory"]["access_count"] == 0

    hot = memory_promotion.memory_hot()
    assert [item["id"] for item in hot["candidates"]] == [child["id"]]

    promoted = memory_hierarchy.memory_promote(memory_id=child["id"])
    assert promoted["new_depth"] == 0

    assert memory_sync.memory_sync()["discrepancies"] == []

    deleted = memory_hierarchy.memory_delete(memory_id=root["id"])
    assert deleted["deleted"] == [root["id"]]
    assert memory_tree.memory_tree()["count"] == 1
