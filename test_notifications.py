"""
Tests for output previews and notifiers.
"""

import logging

import requests

from cronos.notifications import (
    LoggingNotifier,
    Notification,
    WebhookNotifier,
    output_preview,
)


def test_preview_keeps_last_three_lines():
    assert output_preview("one\ntwo\nthree\nfour\n\n") == "two\nthree\nfour"


def test_preview_of_empty_output():
    assert output_preview("") == ""
    assert output_preview(None) == ""
    assert output_preview("   \n") == ""


def test_long_preview_keeps_tail():
    output = "a" * 150 + "END"
    preview = output_preview(output)
    assert len(preview) == 100
    assert preview.startswith("…")
    assert preview.endswith("END")


def test_notification_text():
    ok = Notification(job_id="1", job_name="backup", success=True, output_preview="")
    assert ok.title == "Job Succeeded"
    assert ok.body == "Job 'backup' completed successfully"

    with_output = Notification(job_id="1", job_name="backup", success=True, output_preview="42 rows")
    assert with_output.body == "Job 'backup'\n42 rows"

    failed = Notification(job_id="1", job_name="backup", success=False, output_preview="disk full")
    assert failed.title == "Job Failed"
    assert failed.body == "Job 'backup' failed\ndisk full"


def test_logging_notifier(caplog):
    caplog.set_level(logging.INFO, logger="cronos.notifications")
    LoggingNotifier().notify(Notification(job_id="1", job_name="sync", success=False, output_preview="x"))

    assert caplog.records[-1].levelno == logging.WARNING
    assert "Job Failed" in caplog.records[-1].getMessage()


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append((url, json, timeout))
        if self.error:
            raise self.error
        return self.response


def test_webhook_notifier_posts_json():
    session = FakeSession()
    notifier = WebhookNotifier("http://hooks.local/cronos", timeout=5, session=session)

    notifier.notify(Notification(job_id="7", job_name="report", success=True, output_preview="done"))

    url, payload, timeout = session.calls[0]
    assert url == "http://hooks.local/cronos"
    assert timeout == 5
    assert payload == {
        'job_id': "7",
        'job_name': "report",
        'success': True,
        'output_preview': "done",
        'title': "Job Succeeded",
        'body': "Job 'report'\ndone",
    }


def test_webhook_failures_are_logged_not_raised(caplog):
    notification = Notification(job_id="7", job_name="report", success=False, output_preview="")

    WebhookNotifier("http://hooks.local", session=FakeSession(error=requests.ConnectionError("refused"))).notify(notification)
    WebhookNotifier("http://hooks.local", session=FakeSession(response=FakeResponse(500))).notify(notification)

    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 2
