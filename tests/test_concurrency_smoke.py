from concurrent.futures import ThreadPoolExecutor

from core.services import memory_hierarchy as hierarchy
from core.services import memory_telemetry as telemetry


def test_concurrent_touches_keep_every_count(server_db, reload_shard):
    memory_id = hierarchy.memory_create(title="Shared")["id"]

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(
            executor.map(lambda index: telemetry.record_access(memory_id, f"agent-{index}", 0), range(8))
        )

    assert all(results)
    assert reload_shard(memory_id).access_count == 8
