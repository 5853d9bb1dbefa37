import pytest

from chapter_assistant.json_index import JsonIndex, collect_records, to_flat_text


def test_flat_text_joins_nested_values():
    value = {"name": "Cloud Jam", "tags": ["cloud", "", None], "free": True, "meta": {"seats": 40}}
    assert to_flat_text(value) == "name: Cloud Jam | tags: cloud | free: true | meta: seats: 40"


def test_collect_records_walks_objects_and_arrays():
    records = []
    collect_records([{"title": "Hackvento", "team": {"lead": "Asha"}}, "", 7], "events.json", "$", records)
    assert [r["pointer"] for r in records] == ["$/0", "$/0/title", "$/0/team", "$/0/team/lead", "$/2"]
    assert records[0]["data"] == {"title": "Hackvento", "team": {"lead": "Asha"}}
    assert records[-1]["text"] == "7"


@pytest.mark.asyncio
async def test_refresh_skips_invalid_json_files(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "events.json").write_text('{"title": "Android Study Jam", "venue": "Lab 3"}')
    (data_dir / "broken.json").write_text("{oops")
    index = JsonIndex(data_dir, tmp_path / "json-index.json")

    snapshot = await index.refresh()

    assert {r["sourceFile"] for r in snapshot["records"]} == {"events.json"}


@pytest.mark.asyncio
async def test_search_prefers_best_matching_pointer(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "events.json").write_text(
        '[{"title": "Android Study Jam", "venue": "Lab 3"}, {"title": "Cloud Jam", "venue": "Hall"}]'
    )
    index = JsonIndex(data_dir, tmp_path / "json-index.json")

    result = await index.search("android jam lab", limit=2)

    assert result["records"][0]["pointer"] == "$/0"
    assert len(result["records"]) == 2
