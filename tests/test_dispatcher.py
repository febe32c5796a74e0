import re
from unittest.mock import Mock

import pytest
import requests

from screening.dispatcher import WebhookDispatcher, generate_tracking_id
from screening.errors import UpstreamError, ValidationError

TRACKING_ID = re.compile(r"^REQ-\d+-[a-z0-9]{9}$")

DESCRIPTION = (
    "We are hiring a backend engineer to build Python services, "
    "own the data model and mentor two junior developers."
)


def make_dispatcher(system, response=None, error=None):
    session = Mock()
    if error is not None:
        session.post.side_effect = error
    else:
        session.post.return_value = response
    return WebhookDispatcher(
        "http://evaluator.test/webhook", api_key="secret", timeout=12, audit=system.audit, session=session,
    )


def ok_response(body=None):
    response = Mock(ok=True, status_code=200)
    response.json.return_value = body if body is not None else {"executionId": "exec-1"}
    return response


def test_tracking_id_format():
    ids = {generate_tracking_id() for _ in range(50)}
    assert all(TRACKING_ID.match(i) for i in ids)
    assert len(ids) == 50


def test_submit_posts_payload(system):
    dispatcher = make_dispatcher(system, ok_response())
    result = dispatcher.submit({"jobTitle": "  Data Engineer  ", "experienceLevel": "senior"}, user_id="u-42")

    assert TRACKING_ID.match(result["requirementId"])
    assert result["status"] == "submitted"
    assert result["estimatedTime"] == "3-5 minutes"
    assert result["executionId"] == "exec-1"

    args, kwargs = dispatcher.session.post.call_args
    assert args == ("http://evaluator.test/webhook",)
    assert kwargs["headers"] == {"X-API-Key": "secret"}
    assert kwargs["timeout"] == 12
    payload = kwargs["json"]
    assert payload["requirement_id"] == result["requirementId"]
    assert payload["jobTitle"] == "Data Engineer"
    assert payload["experienceLevel"] == "senior"
    assert payload["userId"] == "u-42"


def test_submit_is_audited(system):
    dispatcher = make_dispatcher(system, ok_response())
    result = dispatcher.submit({"jobTitle": "Data Engineer", "jobDescription": DESCRIPTION, "inputType": "description"})

    logs = system.audit.get_audit_logs({"action": "analysis_submitted"})
    assert len(logs) == 1
    assert logs[0]["entity_id"] == result["requirementId"]
    assert logs[0]["user_id"] == "anonymous"
    assert logs[0]["details"]["input_type"] == "description"


def test_webhook_body_cannot_override_tracking_fields(system):
    dispatcher = make_dispatcher(system, ok_response({"status": "queued", "requirementId": "other"}))
    result = dispatcher.submit({"jobTitle": "Data Engineer"})
    assert result["status"] == "submitted"
    assert result["requirementId"] != "other"


def test_network_failure_raises_upstream_error(system):
    dispatcher = make_dispatcher(system, error=requests.ConnectionError("connection refused"))
    with pytest.raises(UpstreamError) as exc:
        dispatcher.submit({"jobTitle": "Data Engineer"})

    assert exc.value.status_code == 502
    assert exc.value.message == "Failed to submit analysis to processing queue"
    assert len(system.audit.get_audit_logs({"action": "analysis_submit_failed"})) == 1


def test_error_status_raises_upstream_error(system):
    dispatcher = make_dispatcher(system, Mock(ok=False, status_code=500, text="workflow crashed"))
    with pytest.raises(UpstreamError):
        dispatcher.submit({"jobTitle": "Data Engineer"})
    assert system.audit.get_audit_logs({"action": "analysis_submit_failed"})[0]["details"] == {"status_code": 500}


def test_invalid_request_is_not_sent(system):
    dispatcher = make_dispatcher(system, ok_response())

    with pytest.raises(ValidationError) as exc:
        dispatcher.submit({"jobTitle": "ab"})
    assert exc.value.message == "Job title must be at least 3 characters"

    with pytest.raises(ValidationError) as exc:
        dispatcher.submit({"jobTitle": "Data Engineer", "jobDescription": "Too short", "inputType": "description"})
    assert exc.value.message == "Job description must be at least 50 characters"

    with pytest.raises(ValidationError):
        dispatcher.submit({})

    dispatcher.session.post.assert_not_called()
