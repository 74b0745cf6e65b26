# qx7/tests/test_logging.py
import json
import logging

import pytest

from qx7 import logging as qlog

ID_A = "0123456789abcdef0123456789abcdef"


@pytest.fixture(autouse=True)
def _fresh_context():
    qlog.reset()
    yield
    qlog.reset()


def _format(**extra):
    record = logging.makeLogRecord(
        {"name": "qx7.test", "levelname": "INFO", "levelno": logging.INFO, "msg": "hello", **extra}
    )
    return json.loads(qlog.JSONFormatter().format(record))


def test_envelope_and_context_fields():
    qlog.bind(req_id="abc123", endpoint="onboarding-step1")
    evt = _format(persistence_method="etag")
    assert evt["msg"] == "hello"
    assert evt["lvl"] == "INFO"
    assert evt["req_id"] == "abc123"
    assert evt["endpoint"] == "onboarding-step1"
    assert evt["persistence_method"] == "etag"
    assert evt["ts"].endswith("Z")


def test_unknown_extras_go_to_meta():
    evt = _format(not_modified=True)
    assert evt["meta"] == {"not_modified": True}


def test_scrub_dict_redacts_and_shortens_ids():
    scrubbed = qlog.scrub_dict(
        {"Cookie": "a=b", "X-Cognito-User-Id": "user", "x-qx7-id": ID_A, "accept": "*/*"}
    )
    assert scrubbed["Cookie"] == "***"
    assert scrubbed["X-Cognito-User-Id"] == "***"
    assert scrubbed["x-qx7-id"] == ID_A[: qlog.ID_PREFIX_LEN]
    assert scrubbed["accept"] == "*/*"


def test_log_resolution_emits_prefix_only():
    records = []

    class _Collect(logging.Handler):
        def emit(self, record):
            records.append(record)

    logger = logging.getLogger("qx7.test.resolution")
    logger.propagate = False
    handler = _Collect()
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    try:
        qlog.log_resolution(
            logger,
            endpoint="onboarding-step2",
            qx7_id=ID_A,
            persistence_method="localStorage",
            is_returning=True,
        )
    finally:
        logger.removeHandler(handler)

    evt = json.loads(qlog.JSONFormatter().format(records[0]))
    assert evt["id_prefix"] == ID_A[:8]
    assert ID_A not in json.dumps(evt)
    assert evt["is_returning"] is True


def test_ensure_request_id_prefers_header():
    assert qlog.ensure_request_id({"x-request-id": "abcdef0123456789"}) == "abcdef0123456789"
    assert qlog.context()["req_id"] == "abcdef0123456789"
    generated = qlog.ensure_request_id({})
    assert len(generated) == 32


def test_ensure_request_id_replaces_malformed_header():
    rid = qlog.ensure_request_id({"x-request-id": "not a hex id"})
    assert rid != "not a hex id"
    assert qlog.REQUEST_ID_RE.fullmatch(rid)
    assert qlog.context()["req_id"] == rid


def test_unbind_removes_keys():
    qlog.bind(path="/x", method="GET")
    qlog.unbind("path")
    assert qlog.context() == {"method": "GET"}
