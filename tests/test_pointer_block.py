import json

import pytest

from core import pointer_block
from core.errors import MalformedBlockError
from core.pointer_block import PointerEntry, SUB_MEMORY_END, SUB_MEMORY_START


def _entries():
    return [
        PointerEntry(id="pf-aaa", title="Deploy notes", summary="How staging is rolled out"),
        PointerEntry(id="pf-bbb", title="Incidents", summary="Postmortems — últimos"),
    ]


def test_parse_without_marker_returns_content_unchanged():
    content = "Plain memory body\nwith two lines"
    main, entries = pointer_block.parse(content)
    assert main == content
    assert entries == []
    assert pointer_block.render(main, entries) == content


def test_parse_empty_and_none_content():
    assert pointer_block.parse("") == ("", [])
    assert pointer_block.parse(None) == ("", [])


def test_render_then_parse_keeps_main_and_entries():
    rendered = pointer_block.render("Main body", _entries())
    main, entries = pointer_block.parse(rendered)
    assert main == "Main body"
    assert entries == _entries()


def test_render_layout_uses_markers_and_field_names():
    rendered = pointer_block.render("Main body", _entries()[:1])
    assert rendered.startswith(f"Main body\n\n{SUB_MEMORY_START}\n")
    assert rendered.endswith(f"{SUB_MEMORY_END}\n")
    block = rendered.split(SUB_MEMORY_START)[1].split(SUB_MEMORY_END)[0]
    assert json.loads(block) == [
        {"id": "pf-aaa", "title": "Deploy notes", "summary": "How staging is rolled out"}
    ]


def test_render_with_no_entries_drops_block():
    rendered = pointer_block.render("Main body", _entries())
    main, _ = pointer_block.parse(rendered)
    assert pointer_block.render(main, []) == "Main body"


def test_start_marker_without_end_is_malformed():
    content = f"Body\n\n{SUB_MEMORY_START}\n[]"
    with pytest.raises(MalformedBlockError) as excinfo:
        pointer_block.parse(content)
    assert excinfo.value.content == content


@pytest.mark.parametrize(
    "block",
    [
        "not json",
        '{"id": "pf-aaa"}',
        '[{"title": "no id"}]',
        '[{"id": 7, "title": "x", "summary": "y"}]',
        '["pf-aaa"]',
    ],
)
def test_bad_block_payload_is_malformed(block):
    content = f"Body\n\n{SUB_MEMORY_START}\n{block}\n{SUB_MEMORY_END}\n"
    with pytest.raises(MalformedBlockError):
        pointer_block.parse(content)


def test_null_block_parses_as_empty():
    content = f"Body\n\n{SUB_MEMORY_START}\nnull\n{SUB_MEMORY_END}\n"
    assert pointer_block.parse(content) == ("Body", [])


def test_indentation_is_not_significant():
    content = (
        f"Body\n\n{SUB_MEMORY_START}\n"
        '[{"id":"pf-aaa","title":"Deploy notes","summary":"How staging is rolled out"}]'
        f"\n{SUB_MEMORY_END}\n"
    )
    _, entries = pointer_block.parse(content)
    assert entries == _entries()[:1]


def test_append_and_remove_by_id():
    content = pointer_block.append("Body", _entries()[0])
    content = pointer_block.append(content, _entries()[1])
    assert [entry.id for entry in pointer_block.parse(content)[1]] == ["pf-aaa", "pf-bbb"]

    content = pointer_block.remove_by_id(content, "pf-aaa")
    assert [entry.id for entry in pointer_block.parse(content)[1]] == ["pf-bbb"]

    content = pointer_block.remove_by_id(content, "pf-bbb")
    assert content == "Body"
    assert not pointer_block.has_pointer_block(content)


def test_remove_missing_id_is_noop():
    content = pointer_block.render("Body", _entries())
    assert pointer_block.remove_by_id(content, "pf-zzz") == content


def test_append_refuses_malformed_block():
    content = f"Body\n\n{SUB_MEMORY_START}\n[oops\n{SUB_MEMORY_END}\n"
    with pytest.raises(MalformedBlockError):
        pointer_block.append(content, _entries()[0])


def test_replace_all_tolerates_malformed_block():
    content = f"Body\n{SUB_MEMORY_START}\n[oops"
    replaced = pointer_block.replace_all(content, _entries()[:1])
    assert replaced.startswith(content)
    assert replaced.count(SUB_MEMORY_END) == 1


def test_find_entry():
    content = pointer_block.render("Body", _entries())
    assert pointer_block.find_entry(content, "pf-bbb") == _entries()[1]
    assert pointer_block.find_entry(content, "pf-zzz") is None
    assert pointer_block.find_entry(f"{SUB_MEMORY_START} broken", "pf-aaa") is None
