import json
import logging

from form_relay.domain.schema import JobEvent, JobEventType
from form_relay.telemetry.logger import CorrelationFilter, JSONFormatter, QueueEventLogger


def make_record(message="hello", **extra):
    record = logging.LogRecord("form_relay.test", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields_and_keeps_accents():
    formatter = JSONFormatter(service_name="form-relay")

    entry = json.loads(formatter.format(make_record("Formulario recibido", component="http_server", job_id="abc")))

    assert entry["service"] == "form-relay"
    assert entry["level"] == "INFO"
    assert entry["message"] == "Formulario recibido"
    assert entry["component"] == "http_server"
    assert entry["job_id"] == "abc"
    assert "Formulario recibido" in formatter.format(make_record("Formulario recibido"))
    assert "\\u00e9" not in formatter.format(make_record("éxito"))


def test_correlation_filter_reuses_job_id():
    record = make_record(job_id="abc123")

    CorrelationFilter().filter(record)

    assert record.correlation_id == "job-abc123"


def test_correlation_filter_generates_id_without_job():
    record = make_record()

    CorrelationFilter().filter(record)

    assert record.correlation_id.startswith("fr-")


def test_queue_event_logger_levels(caplog):
    listener = QueueEventLogger()

    with caplog.at_level(logging.INFO, logger="form_relay.queue.events"):
        listener(JobEvent(type=JobEventType.COMPLETED, queue="q", job_id="1", attempts_made=1, max_attempts=3))
        listener(JobEvent(type=JobEventType.RETRY_SCHEDULED, queue="q", job_id="1", attempts_made=1, max_attempts=3, delay_ms=2000))
        listener(JobEvent(type=JobEventType.STALLED, queue="q", job_id="1"))
        listener(JobEvent(type=JobEventType.FAILED, queue="q", job_id="1", attempts_made=3, max_attempts=3, error="quota"))
        listener(JobEvent(type=JobEventType.ERROR, queue="q", error="claim: connection reset"))

    levels = [record.levelno for record in caplog.records]
    assert levels == [logging.INFO, logging.WARNING, logging.WARNING, logging.ERROR, logging.ERROR]
    assert "failed permanently" in caplog.records[3].getMessage()
    assert caplog.records[3].dead_lettered is True
    assert "retrying in 2000ms" in caplog.records[1].getMessage()
