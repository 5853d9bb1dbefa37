import json

import pytest

from chapter_assistant.csv_index import CsvIndex, parse_csv, rows_to_records
from chapter_assistant.errors import ParseError, SourceUnavailable


def test_parse_csv_handles_quotes_and_line_endings():
    text = 'name,notes\r\n"Jam, Cloud","said ""hi""\nthen left"\nlast,row'
    assert parse_csv(text) == [
        ["name", "notes"],
        ["Jam, Cloud", 'said "hi"\nthen left'],
        ["last", "row"],
    ]


def test_parse_csv_keeps_empty_fields():
    assert parse_csv("a,,c\n") == [["a", "", "c"]]


def test_parse_csv_rejects_unterminated_quote():
    with pytest.raises(ParseError):
        parse_csv('a,"open\n')


def test_rows_to_records_normalises_headers_and_skips_blank_rows():
    rows = [[" Name ", "", "DATE"], ["Cloud Jam ", "x", " 2024"], ["", " ", ""], ["Short"]]
    records = rows_to_records(rows, "events.csv")
    assert len(records) == 2
    assert records[0] == {
        "sourceFile": "events.csv",
        "rowIndex": 1,
        "data": {"name": "Cloud Jam", "column_2": "x", "date": "2024"},
        "text": "name: Cloud Jam | column_2: x | date: 2024",
    }
    assert records[1]["rowIndex"] == 3
    assert records[1]["data"] == {"name": "Short", "column_2": "", "date": ""}


@pytest.mark.asyncio
async def test_refresh_indexes_csv_files_and_skips_bad_ones(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "b_events.csv").write_text("Name,Venue\nHackvento,IET Auditorium\n")
    (data_dir / "a_team.csv").write_text("Name,Role\nAsha,Lead\nRavi,Web\n")
    (data_dir / "broken.csv").write_text('Name\n"unterminated\n')
    (data_dir / "notes.txt").write_text("ignored")
    index_path = tmp_path / "csv-index.json"

    snapshot = await CsvIndex(data_dir, index_path).refresh()

    assert [r["sourceFile"] for r in snapshot["records"]] == ["a_team.csv", "a_team.csv", "b_events.csv"]
    on_disk = json.loads(index_path.read_text())
    assert on_disk["records"] == snapshot["records"]
    assert on_disk["refreshedAt"].endswith("Z")


@pytest.mark.asyncio
async def test_search_refreshes_missing_snapshot(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "team.csv").write_text("Name,Role\nAsha,Lead\nRavi,Web Developer\n")
    index_path = tmp_path / "csv-index.json"
    index = CsvIndex(data_dir, index_path)

    result = await index.search("web developer")

    assert index_path.exists()
    assert [r["data"]["name"] for r in result["records"]] == ["Ravi"]


@pytest.mark.asyncio
async def test_missing_data_dir_is_source_unavailable(tmp_path):
    index = CsvIndex(tmp_path / "nope", tmp_path / "csv-index.json")
    with pytest.raises(SourceUnavailable):
        await index.refresh()
