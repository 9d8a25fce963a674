"""
Tests for chunk processing: partial failure, in-file and cross-chunk
duplicates, retry of transient write failures and the row-by-row fallback.
"""

import pytest

from import_engine.db import records
from import_engine.domain.imports.chunks import ChunkProcessor
from import_engine.domain.imports.dedup import DedupIndex
from import_engine.domain.imports.errors import JobFatalError, PersistenceError
from import_engine.domain.imports.modules import get_module_schema
from import_engine.domain.imports.parser import ImportRow

LEADS_COLUMNS = {"name": 0, "phone": 1}


def _rows(pairs, start=1):
    return [
        ImportRow(row_number=number, values=[name, phone], next_offset=number * 100)
        for number, (name, phone) in enumerate(pairs, start=start)
    ]


def _processor(job_id="job-1", module="leads", sleeps=None, **kwargs):
    schema = get_module_schema(module)
    return ChunkProcessor(
        schema,
        LEADS_COLUMNS,
        DedupIndex(schema.name, job_id),
        job_id=job_id,
        sleep=(sleeps.append if sleeps is not None else (lambda _: None)),
        **kwargs,
    )


def _ten_leads_with_one_missing_name():
    pairs = [(f"Lead {i}", f"119{i:08d}") for i in range(10)]
    pairs[4] = ("", pairs[4][1])
    return pairs


class TestChunkOutcomes:
    def test_invalid_row_does_not_block_the_rest(self):
        result = _processor().process(_rows(_ten_leads_with_one_missing_name()))

        assert len(result.accepted) == 9
        assert len(result.rejected) == 1
        assert result.rejected[0].row_number == 5
        assert result.error_entries() == [{"row": 5, "reason": "Missing required field 'name'"}]
        assert result.next_offset == 1000
        assert records.count_records("leads", "job-1") == 9

    def test_delta_respects_accounting(self):
        result = _processor().process(_rows(_ten_leads_with_one_missing_name()))
        delta = result.as_delta()
        assert delta["processed_rows"] == 10
        assert delta["success_count"] + delta["duplicate_count"] + delta["error_count"] == 10

    def test_duplicate_inside_one_chunk(self):
        result = _processor().process(_rows([("Ana", "11999998888"), ("Bia", "(11) 99999-8888")]))
        assert [row.row_number for row in result.accepted] == [1]
        assert [row.row_number for row in result.duplicates] == [2]
        assert result.duplicates[0].reason == "Duplicate of an earlier row in this file"

    def test_duplicate_across_chunk_boundary(self):
        processor = _processor()
        first = processor.process(_rows([("Ana", "11999998888")], start=1))
        second = processor.process(_rows([("Ana", "(11) 99999-8888")], start=2))
        assert len(first.accepted) == 1
        assert len(second.duplicates) == 1
        assert records.count_records("leads") == 1

    def test_row_already_stored_by_another_job(self):
        _processor(job_id="job-old").process(_rows([("Ana", "11999998888")]))
        result = _processor(job_id="job-new").process(_rows([("Ana", "11999998888")]))
        assert len(result.duplicates) == 1
        assert result.duplicates[0].reason == "Record already exists"

    def test_replayed_chunk_is_accepted_without_reinserting(self):
        rows = [("Ana", "11999990001"), ("Bia", "11999990002"), ("Bia", "11999990002")]
        _processor(job_id="job-1").process(_rows(rows))

        # A fresh run of the same job re-reads the un-checkpointed chunk
        replay = _processor(job_id="job-1").process(_rows(rows))
        assert [row.row_number for row in replay.accepted] == [1, 2]
        assert [row.row_number for row in replay.duplicates] == [3]
        assert records.count_records("leads") == 2

    def test_empty_chunk(self):
        result = _processor().process([])
        assert result.processed_rows == 0
        assert result.next_offset is None


class TestPersistenceFailures:
    def test_transient_failure_is_retried(self, monkeypatch):
        original = records.insert_records
        calls = []

        def flaky_insert(module, job_id, rows):
            calls.append(len(rows))
            if len(calls) <= 2:
                raise PersistenceError("connection reset", transient=True)
            return original(module, job_id, rows)

        monkeypatch.setattr(records, "insert_records", flaky_insert)
        sleeps = []
        result = _processor(sleeps=sleeps, base_delay=0.1, max_delay=1.0).process(
            _rows([("Ana", "11999990001"), ("Bia", "11999990002")])
        )

        assert len(result.accepted) == 2
        assert len(calls) == 3
        assert sleeps == [0.1, 0.2]
        assert records.count_records("leads") == 2

    def test_exhausted_retries_are_fatal(self, monkeypatch):
        def always_down(module, job_id, rows):
            raise PersistenceError("connection refused", transient=True)

        monkeypatch.setattr(records, "insert_records", always_down)
        with pytest.raises(JobFatalError) as exc_info:
            _processor(max_attempts=3).process(_rows([("Ana", "11999990001")]))
        assert "after 3 attempts" in str(exc_info.value)
        assert records.count_records("leads") == 0

    def test_permanent_batch_failure_falls_back_to_single_rows(self, monkeypatch):
        original = records.insert_records

        def picky_insert(module, job_id, rows):
            if len(rows) > 1:
                raise PersistenceError("batch rejected", transient=False)
            if rows[0]["payload"]["name"] == "Bad":
                raise PersistenceError("value too long for column", transient=False)
            return original(module, job_id, rows)

        monkeypatch.setattr(records, "insert_records", picky_insert)
        result = _processor().process(
            _rows([("Ana", "11999990001"), ("Bad", "11999990002"), ("Caio", "11999990003")])
        )

        assert [row.row_number for row in result.accepted] == [1, 3]
        assert [row.row_number for row in result.rejected] == [2]
        assert result.rejected[0].reason == "value too long for column"
        assert records.count_records("leads") == 2

    def test_row_inserted_concurrently_becomes_duplicate(self, monkeypatch):
        original = records.insert_records

        def racing_insert(module, job_id, rows):
            # Another job stores the same lead between our prefetch and our write
            original(module, "job-other", [dict(rows[0], source_row_number=99)])
            return original(module, job_id, rows)

        monkeypatch.setattr(records, "insert_records", racing_insert)
        result = _processor().process(_rows([("Ana", "11999990001")]))

        assert len(result.duplicates) == 1
        assert result.duplicates[0].reason == "Record already exists"
        assert records.count_records("leads") == 1

    def test_duplicate_stands_in_for_a_rejected_row(self, monkeypatch):
        original = records.insert_records

        def reject_first_row(module, job_id, rows):
            if any(row["source_row_number"] == 1 for row in rows):
                raise PersistenceError("value too long for column", transient=False)
            return original(module, job_id, rows)

        monkeypatch.setattr(records, "insert_records", reject_first_row)
        result = _processor().process(_rows([("Ana", "11999990001"), ("Ana B", "(11) 99999-0001")]))

        assert [(row.row_number, row.outcome) for row in result.rejected + result.accepted] == [
            (1, "rejected"),
            (2, "accepted"),
        ]
        assert result.duplicates == []
        assert records.count_records("leads") == 1

    def test_later_duplicates_stay_duplicates_once_one_is_stored(self, monkeypatch):
        original = records.insert_records

        def reject_rows_one_and_two(module, job_id, rows):
            if any(row["source_row_number"] in (1, 2) for row in rows):
                raise PersistenceError("value too long for column", transient=False)
            return original(module, job_id, rows)

        monkeypatch.setattr(records, "insert_records", reject_rows_one_and_two)
        result = _processor().process(
            _rows([
                ("Ana", "11999990001"),
                ("Ana B", "11999990001"),
                ("Ana C", "11999990001"),
                ("Ana D", "11999990001"),
            ])
        )

        assert [row.row_number for row in result.rejected] == [1, 2]
        assert [row.row_number for row in result.accepted] == [3]
        assert [row.row_number for row in result.duplicates] == [4]
        assert result.processed_rows == 4
        assert records.count_records("leads") == 1
