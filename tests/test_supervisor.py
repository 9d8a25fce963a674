"""
End-to-end tests for the import supervisor: a file goes in, a terminal or
resumable job comes out, and the imported dataset matches what a single
uninterrupted run would produce.
"""

import io
import logging
import os

import pytest
from openpyxl import Workbook

from conftest import leads_csv, numbered_leads
from import_engine.core.config import settings
from import_engine.db import records
from import_engine.domain.imports import jobs, supervisor
from import_engine.domain.imports.errors import PersistenceError
from import_engine.domain.imports.supervisor import CANCELLED_REASON, ImportSupervisor
from import_engine.integrations import storage


class WorkerCrash(BaseException):
    """Simulates the process dying mid-chunk; not an Exception so nothing handles it."""


def _xlsx_bytes(rows) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _run(job_id, chunk_size=3):
    return ImportSupervisor(job_id, chunk_size=chunk_size, sleep=lambda _: None).run()


def _control_after_checkpoints(monkeypatch, action, after):
    """Request `action` once `after` checkpoints have been written."""
    original = jobs.checkpoint
    written = []

    def checkpoint(job_id, claim_token, delta, **kwargs):
        job = original(job_id, claim_token, delta, **kwargs)
        written.append(job_id)
        if len(written) == after:
            jobs.request_control(job_id, action)
        return job

    monkeypatch.setattr(supervisor.job_store, "checkpoint", checkpoint)
    return written


def _mixed_file():
    """30 data rows: 26 distinct leads, 2 duplicates and 2 invalid rows."""
    pairs = numbered_leads(26)
    pairs.insert(5, ("Repeat", pairs[0][1]))
    pairs.insert(12, ("", "11988887777"))
    pairs.insert(20, ("Repeat", "(11) " + pairs[10][1][2:7] + "-" + pairs[10][1][7:]))
    pairs.insert(25, ("Short", "1234"))
    return leads_csv(pairs)


class TestCompleteRuns:
    def test_ten_rows_one_duplicate(self, make_job):
        pairs = numbered_leads(9) + [("Again", numbered_leads(1)[0][1])]
        job = make_job(leads_csv(pairs))

        result = _run(job["id"])

        assert result["status"] == jobs.COMPLETED
        assert result["processed_rows"] == 10
        assert result["total_rows"] == 10
        assert result["success_count"] == 9
        assert result["duplicate_count"] == 1
        assert result["error_count"] == 0
        assert result["current_chunk"] == 4
        assert result["completed_at"] is not None
        assert jobs.get_import_job(job["id"])["claim_token"] is None
        assert records.count_records("leads", job["id"]) == 9

    def test_header_only_file_completes_with_zero_rows(self, make_job):
        job = make_job("Nome,Telefone\n")
        result = _run(job["id"])
        assert result["status"] == jobs.COMPLETED
        assert result["processed_rows"] == 0
        assert result["total_rows"] == 0

    def test_invalid_rows_are_logged(self, make_job):
        job = make_job(leads_csv([("Ana", "11999990001"), ("", "11999990002"), ("Caio", "12")]))
        result = _run(job["id"])
        assert result["status"] == jobs.COMPLETED
        assert result["success_count"] == 1
        assert result["error_count"] == 2
        assert [entry["row"] for entry in result["error_log"]] == [2, 3]

    def test_duplicate_across_chunk_boundary(self, make_job):
        pairs = [("Ana", "11999990001"), ("Bia", "11999990002"), ("Caio", "11999998888"), ("Caio", "(11) 99999-8888")]
        job = make_job(leads_csv(pairs))
        result = _run(job["id"], chunk_size=3)
        assert result["success_count"] == 3
        assert result["duplicate_count"] == 1

    def test_rows_from_another_file_are_duplicates(self, make_job):
        first = make_job(leads_csv(numbered_leads(3)))
        _run(first["id"])
        second = make_job(leads_csv(numbered_leads(5)))
        result = _run(second["id"])
        assert result["success_count"] == 2
        assert result["duplicate_count"] == 3

    def test_xlsx_file(self, make_job):
        content = _xlsx_bytes(
            [
                ["CPF", "Nome", "Data Nascimento"],
                ["529.982.247-25", "Ana", "20/10/1958"],
                ["111.444.777-35", "Bia", None],
                ["390.533.447-04", "Caio", None],
            ]
        )
        job = make_job(content, file_name="base.xlsx", module="baseoff")
        result = _run(job["id"], chunk_size=2)
        assert result["status"] == jobs.COMPLETED
        assert result["success_count"] == 2
        assert result["error_count"] == 1
        assert result["error_log"][0]["reason"] == "Invalid CPF: 39053344704"

    def test_total_rows_unknown_without_precount(self, make_job, monkeypatch):
        monkeypatch.setattr(settings, "import_precount_rows", False)
        job = make_job(leads_csv(numbered_leads(4)))
        original = jobs.checkpoint
        seen_totals = []

        def checkpoint(job_id, claim_token, delta, **kwargs):
            seen_totals.append(jobs.get_import_job(job_id)["total_rows"])
            return original(job_id, claim_token, delta, **kwargs)

        monkeypatch.setattr(supervisor.job_store, "checkpoint", checkpoint)
        result = _run(job["id"], chunk_size=2)
        assert seen_totals == [None, None]
        assert result["total_rows"] == 4

    def test_stray_quote_does_not_swallow_following_rows(self, make_job):
        content = 'Nome,Telefone\nAna 5",11999990001\nBia,11999990002\nCaio,11999990003\nDani,11999990004\n'
        job = make_job(content)

        result = _run(job["id"], chunk_size=2)

        assert result["status"] == jobs.COMPLETED
        assert result["processed_rows"] == 4
        assert result["success_count"] == 4
        assert result["total_rows"] == 4
        assert result["chunk_metadata"]["estimated_rows"] == 4
        assert records.count_records("leads", job["id"]) == 4

    def test_precount_mismatch_is_logged(self, make_job, monkeypatch, caplog):
        monkeypatch.setattr(supervisor.RowParser, "count_rows", lambda self, data_offset, delimiter=None: 10)
        job = make_job(leads_csv(numbered_leads(4)))

        with caplog.at_level(logging.WARNING, logger=supervisor.__name__):
            result = _run(job["id"])

        assert result["total_rows"] == 4
        assert "pre-count found 10 record(s) but 4 row(s) were processed" in caplog.text


class TestFailFast:
    def test_missing_required_column(self, make_job):
        job = make_job("Nome,Email\nAna,ana@example.com\n")
        result = _run(job["id"])

        assert result["status"] == jobs.FAILED
        assert "phone" in result["failure_reason"]
        assert result["processed_rows"] == 0
        assert result["error_log"][-1]["row"] is None
        assert "phone" in result["error_log"][-1]["reason"]
        assert records.count_records("leads") == 0

    def test_unsupported_file_type(self, make_job):
        job = make_job("Nome,Telefone\n", file_name="leads.txt")
        result = _run(job["id"])
        assert result["status"] == jobs.FAILED
        assert "Unsupported file type" in result["failure_reason"]

    def test_missing_source_file(self):
        job = jobs.create_import_job(
            owner_id="user-1",
            file_name="gone.csv",
            file_path="imports/leads/gone/gone.csv",
            file_size_bytes=0,
            module="leads",
        )
        result = _run(job["id"])
        assert result["status"] == jobs.FAILED
        assert result["failure_reason"].startswith("Source file unreadable")

    def test_retry_exhaustion_fails_the_job(self, make_job, monkeypatch):
        def always_down(module, job_id, rows):
            raise PersistenceError("connection refused", transient=True)

        monkeypatch.setattr(records, "insert_records", always_down)
        job = make_job(leads_csv(numbered_leads(4)))
        result = _run(job["id"], chunk_size=2)

        assert result["status"] == jobs.FAILED
        assert "Batch insert failed after" in result["failure_reason"]
        assert result["processed_rows"] == 0
        assert result["completed_at"] is not None


class TestPauseResumeCancel:
    def test_pause_then_resume_matches_an_uninterrupted_run(self, make_job, monkeypatch, switch_database):
        content = _mixed_file()

        switch_database("uninterrupted")
        baseline_job = make_job(content)
        baseline = _run(baseline_job["id"])
        baseline_keys = set(records.list_dedup_keys("leads"))
        assert baseline["status"] == jobs.COMPLETED

        switch_database("interrupted")
        job = make_job(content)
        _control_after_checkpoints(monkeypatch, "pause", after=3)

        paused = _run(job["id"])
        assert paused["status"] == jobs.PAUSED
        assert paused["processed_rows"] == 9
        assert paused["control_signal"] is None

        # A paused job without a resume request stays paused
        assert _run(job["id"])["status"] == jobs.PAUSED

        jobs.request_control(job["id"], "resume")
        resumed = _run(job["id"])

        assert resumed["status"] == jobs.COMPLETED
        for counter in ("processed_rows", "success_count", "duplicate_count", "error_count"):
            assert resumed[counter] == baseline[counter]
        assert set(records.list_dedup_keys("leads")) == baseline_keys
        assert len(baseline_keys) == baseline["success_count"] == 26

    def test_pause_before_first_chunk(self, make_job):
        job = make_job(leads_csv(numbered_leads(4)))
        jobs.request_control(job["id"], "pause")

        paused = _run(job["id"])
        assert paused["status"] == jobs.PAUSED
        assert paused["processed_rows"] == 0
        assert paused["chunk_metadata"]["column_map"] == {"name": 0, "phone": 1}

        jobs.request_control(job["id"], "resume")
        assert _run(job["id"])["success_count"] == 4

    def test_cancel_keeps_rows_already_imported(self, make_job, monkeypatch):
        job = make_job(leads_csv(numbered_leads(12)))
        _control_after_checkpoints(monkeypatch, "cancel", after=2)

        result = _run(job["id"])

        assert result["status"] == jobs.FAILED
        assert result["failure_reason"] == CANCELLED_REASON
        assert result["success_count"] == 6
        assert records.count_records("leads", job["id"]) == 6
        assert result["error_log"][-1] == {"row": None, "reason": CANCELLED_REASON}

    def test_cancel_a_paused_job(self, make_job, monkeypatch):
        job = make_job(leads_csv(numbered_leads(6)))
        _control_after_checkpoints(monkeypatch, "pause", after=1)
        assert _run(job["id"])["status"] == jobs.PAUSED

        jobs.request_control(job["id"], "cancel")
        result = _run(job["id"])
        assert result["status"] == jobs.FAILED
        assert result["failure_reason"] == CANCELLED_REASON
        assert result["processed_rows"] == 3

    def test_cancel_arriving_while_pausing_is_not_lost(self, make_job, monkeypatch):
        job = make_job(leads_csv(numbered_leads(6)))
        _control_after_checkpoints(monkeypatch, "pause", after=1)
        original = jobs.transition_status

        def cancel_before_pausing(job_id, from_status, to_status, **kwargs):
            if to_status == jobs.PAUSED:
                jobs.request_control(job_id, "cancel")
            return original(job_id, from_status, to_status, **kwargs)

        monkeypatch.setattr(supervisor.job_store, "transition_status", cancel_before_pausing)
        result = _run(job["id"])

        assert result["status"] == jobs.FAILED
        assert result["failure_reason"] == CANCELLED_REASON
        assert result["processed_rows"] == 3

    def test_pause_arriving_while_resuming_is_not_lost(self, make_job, monkeypatch):
        job = make_job(leads_csv(numbered_leads(6)))
        _control_after_checkpoints(monkeypatch, "pause", after=1)
        assert _run(job["id"])["status"] == jobs.PAUSED

        jobs.request_control(job["id"], "resume")
        original = jobs.transition_status

        def pause_before_resuming(job_id, from_status, to_status, **kwargs):
            if from_status == jobs.PAUSED and to_status == jobs.PROCESSING:
                jobs.request_control(job_id, "pause")
            return original(job_id, from_status, to_status, **kwargs)

        monkeypatch.setattr(supervisor.job_store, "transition_status", pause_before_resuming)
        result = _run(job["id"])

        assert result["status"] == jobs.PAUSED
        assert result["control_signal"] == "pause"
        assert result["processed_rows"] == 3


class TestCrashRecovery:
    def test_chunk_written_but_not_checkpointed_is_replayed(self, make_job, monkeypatch):
        pairs = numbered_leads(9) + [("Again", numbered_leads(1)[0][1])]
        job = make_job(leads_csv(pairs))

        original = jobs.checkpoint
        calls = []

        def crashing_checkpoint(job_id, claim_token, delta, **kwargs):
            calls.append(job_id)
            if len(calls) == 2:
                raise WorkerCrash()
            return original(job_id, claim_token, delta, **kwargs)

        monkeypatch.setattr(supervisor.job_store, "checkpoint", crashing_checkpoint)
        with pytest.raises(WorkerCrash):
            _run(job["id"])

        crashed = jobs.get_import_job(job["id"])
        assert crashed["status"] == jobs.PROCESSING
        assert crashed["processed_rows"] == 3
        assert records.count_records("leads", job["id"]) == 6

        monkeypatch.setattr(supervisor.job_store, "checkpoint", original)
        result = _run(job["id"])

        assert result["status"] == jobs.COMPLETED
        assert result["processed_rows"] == 10
        assert result["success_count"] == 9
        assert result["duplicate_count"] == 1
        assert records.count_records("leads", job["id"]) == 9

    def test_job_held_by_a_live_worker_is_skipped(self, make_job):
        job = make_job(leads_csv(numbered_leads(2)))
        jobs.claim_import_job(job["id"], "someone-else")
        assert _run(job["id"]) is None
        assert jobs.get_import_job(job["id"])["status"] == jobs.UPLOADED

    def test_lost_claim_stops_without_failing_the_job(self, make_job, monkeypatch):
        job = make_job(leads_csv(numbered_leads(6)))
        original = jobs.checkpoint

        def stolen_after_checkpoint(job_id, claim_token, delta, **kwargs):
            written = original(job_id, claim_token, delta, **kwargs)
            jobs.release_import_job(job_id, claim_token)
            jobs.claim_import_job(job_id, "other-worker")
            return written

        monkeypatch.setattr(supervisor.job_store, "checkpoint", stolen_after_checkpoint)
        result = _run(job["id"])

        assert result["status"] == jobs.CHUNK_COMPLETED
        assert result["processed_rows"] == 3
        assert result["claim_token"] == "other-worker"

    def test_terminal_job_is_not_reprocessed(self, make_job):
        job = make_job(leads_csv(numbered_leads(2)))
        _run(job["id"])
        assert _run(job["id"]) is None
        assert records.count_records("leads") == 2


class TestLongReads:
    def _xlsx_job(self, make_job):
        content = _xlsx_bytes([["Nome", "Telefone"]] + [list(pair) for pair in numbered_leads(5)])
        return make_job(content, file_name="leads.xlsx")

    def test_claim_is_refreshed_while_reading(self, make_job, monkeypatch):
        job = self._xlsx_job(make_job)
        original = jobs.heartbeat
        beats = []

        def recording_heartbeat(job_id, token):
            beats.append(job_id)
            return original(job_id, token)

        monkeypatch.setattr(supervisor.job_store, "heartbeat", recording_heartbeat)
        result = ImportSupervisor(job["id"], chunk_size=2, claim_stale_seconds=0, sleep=lambda _: None).run()

        assert result["status"] == jobs.COMPLETED
        assert result["success_count"] == 5
        assert beats and set(beats) == {job["id"]}

    def test_claim_lost_while_reading_stops_before_any_write(self, make_job, monkeypatch):
        job = self._xlsx_job(make_job)
        monkeypatch.setattr(supervisor.job_store, "heartbeat", lambda job_id, token: False)

        result = ImportSupervisor(job["id"], chunk_size=2, claim_stale_seconds=0, sleep=lambda _: None).run()

        assert result["status"] == jobs.UPLOADED
        assert records.count_records("leads", job["id"]) == 0

    def test_spreadsheet_is_downloaded_once_per_run(self, make_job, monkeypatch):
        job = self._xlsx_job(make_job)
        original = storage.download_to_temp
        copies = []

        def counting_download(file_path, suffix=""):
            copies.append(original(file_path, suffix=suffix))
            return copies[-1]

        monkeypatch.setattr(storage, "download_to_temp", counting_download)
        result = _run(job["id"], chunk_size=2)

        assert result["status"] == jobs.COMPLETED
        assert len(copies) == 1
        assert not os.path.exists(copies[0])
