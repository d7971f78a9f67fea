from __future__ import annotations

from pyfleet._redact import redact_for_log, redact_url
from pyfleet.models.jobs import JobNotification


def test_redact_for_log_masks_credentials_in_configuration() -> None:
    payload = {
        "jobId": "job-1",
        "components": {
            "Db": {
                "version": "1.0.0",
                "configuration": {"db_password": "pw", "apiKey": "k", "mqttClientSecret": "s", "port": 5432},
            }
        },
        "tokens": ["a", "b"],
    }

    redacted = redact_for_log(payload)
    configuration = redacted["components"]["Db"]["configuration"]
    assert configuration == {
        "db_password": "<redacted>",
        "apiKey": "<redacted>",
        "mqttClientSecret": "<redacted>",
        "port": 5432,
    }
    assert redacted["jobId"] == "job-1"
    assert redacted["tokens"] == ["a", "b"]


def test_presigned_urls_lose_their_query_string() -> None:
    url = "https://jobs.example/docs/job-1.json?X-Amz-Signature=abc&X-Amz-Credential=def"
    assert redact_url(url) == "https://jobs.example/docs/job-1.json?<redacted>"
    assert redact_url("https://user:pw@jobs.example/doc") == "https://jobs.example/doc"
    assert redact_url("https://jobs.example/doc") == "https://jobs.example/doc"
    assert redact_url("not a url?x=1") == "not a url?x=1"


def test_models_are_dumped_with_wire_keys() -> None:
    notification = JobNotification(job_id="job-1", document_location="https://jobs.example/d?sig=1")
    assert redact_for_log(notification) == {
        "jobId": "job-1",
        "operation": "DEPLOY",
        "documentLocation": "https://jobs.example/d?<redacted>",
    }


def test_redact_for_log_truncates_long_strings_and_bytes() -> None:
    redacted = redact_for_log({"value": "x" * 600, "blob": b"\x00\x01\x02"}, max_string=10)
    assert redacted["value"] == "x" * 10 + "…<truncated>"
    assert redacted["blob"] == "<3 bytes>"
