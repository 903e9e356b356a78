import logging

import pytest

from form_relay.domain.ports import WriteError, WriteErrorKind
from form_relay.domain.schema import Job, JobPayload
from form_relay.services.submission_worker import SubmissionWorker

from tests.fakes import FakeSheetWriter


def make_job(**overrides) -> Job:
    payload = JobPayload(name="Carlos Pérez", phone="+593987654321", timestamp="5/3/2026, 9:07:03")
    return Job(payload=payload, **overrides)


@pytest.mark.asyncio
async def test_appends_four_column_row():
    writer = FakeSheetWriter()
    worker = SubmissionWorker(writer, product_tag="Lipoxin")

    await worker(make_job())

    assert writer.rows == [["Carlos Pérez", "+593987654321", "Lipoxin", "5/3/2026, 9:07:03"]]


@pytest.mark.asyncio
async def test_write_error_is_logged_and_reraised(caplog):
    writer = FakeSheetWriter(always_fail=WriteError(WriteErrorKind.QUOTA, "Sheets quota exceeded (429)", 429))
    worker = SubmissionWorker(writer)
    job = make_job(attempts_made=1)

    with caplog.at_level(logging.INFO):
        with pytest.raises(WriteError):
            await worker(job)

    errors = [r for r in caplog.records if r.levelno == logging.ERROR and r.name == "form_relay.services.submission_worker"]
    assert len(errors) == 1
    assert errors[0].job_id == job.id
    assert errors[0].submitter_name == "Carlos Pérez"
    assert errors[0].attempt == 2
    assert errors[0].error_kind == "quota"
    assert writer.rows == []


@pytest.mark.asyncio
async def test_unexpected_errors_are_reraised_with_unexpected_kind(caplog):
    worker = SubmissionWorker(FakeSheetWriter(always_fail=RuntimeError("boom")))

    with caplog.at_level(logging.ERROR):
        with pytest.raises(RuntimeError):
            await worker(make_job())

    assert any(getattr(r, "error_kind", None) == "unexpected" for r in caplog.records)


@pytest.mark.asyncio
async def test_phone_number_is_never_logged(caplog):
    worker = SubmissionWorker(FakeSheetWriter(failures=[WriteError(WriteErrorKind.TRANSIENT, "timeout")]))

    with caplog.at_level(logging.DEBUG):
        with pytest.raises(WriteError):
            await worker(make_job())
        await worker(make_job())

    for record in caplog.records:
        assert "+593987654321" not in record.getMessage()
        assert "+593987654321" not in str(record.__dict__.values())
