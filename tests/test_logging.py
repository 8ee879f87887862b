from __future__ import annotations

import logging

from ledger_sync.core import logging as logging_utils


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("ledger_sync.test", logging.INFO, __file__, 1, "event", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_filter_injects_sync_context() -> None:
    logging_utils.set_request_context(request_id="req-9", realm_id="realm-9")
    logging_utils.set_sync_context("payout", "abc")
    try:
        record = make_record()
        assert logging_utils.SyncContextFilter().filter(record) is True
    finally:
        logging_utils.clear_sync_context()
        logging_utils.clear_request_context()

    assert record.request_id == "req-9"
    assert record.realm_id == "realm-9"
    assert record.record_type == "payout"
    assert record.record_id == "abc"


def test_explicit_extra_wins_over_context() -> None:
    logging_utils.set_sync_context("payment", "outer")
    try:
        record = make_record(record_type="payout", record_id="inner")
        logging_utils.SyncContextFilter().filter(record)
    finally:
        logging_utils.clear_sync_context()

    assert record.record_type == "payout"
    assert record.record_id == "inner"


def test_sanitize_payload_redacts_secrets_and_contact_details() -> None:
    payload = {
        "DisplayName": "Ada Lovelace",
        "PrimaryEmailAddr": {"Address": "ada@example.com"},
        "PrimaryPhone": {"FreeFormNumber": "555-0100"},
        "Line": [{"Amount": "10.00", "access_token": "secret"}],
    }

    sanitized = logging_utils.sanitize_payload(payload)

    assert sanitized["DisplayName"] == "Ada Lovelace"
    assert sanitized["PrimaryEmailAddr"] == "***redacted***"
    assert sanitized["PrimaryPhone"] == "***redacted***"
    assert sanitized["Line"] == [{"Amount": "10.00", "access_token": "***redacted***"}]


def test_sync_finished_levels(caplog) -> None:
    with caplog.at_level(logging.INFO, logger="ledger_sync.sync"):
        logging_utils.log_sync_finished(record_type="payout", record_id="1", result="not_ready")
        logging_utils.log_sync_finished(record_type="payout", record_id="1", result="failure")

    assert [record.levelno for record in caplog.records] == [logging.INFO, logging.WARNING]
    assert caplog.records[0].result == "not_ready"
