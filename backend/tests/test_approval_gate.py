"""Tests for risk assessment and the approval webhook."""
import json

import httpx
import pytest

from catalog_importer.core.errors import NetworkError
from catalog_importer.schemas.approval import ApprovalRequest
from catalog_importer.schemas.fields import FieldMapping, MappingConflict
from catalog_importer.services.approval_gate import (
    LoggingApprovalGate,
    WebhookApprovalGate,
    assess_risk,
    sign_payload,
)

CONFLICT = MappingConflict(target_field="sku", winner="sku", loser="SKU", winner_confidence=95, loser_confidence=95)


@pytest.mark.parametrize(
    "confidence, conflicts, needs_approval, level",
    [
        (95, [], False, "low"),
        (75, [], False, "medium"),
        (69, [], True, "high"),
        (40, [], True, "critical"),
        (95, [CONFLICT], True, "medium"),
        (40, [CONFLICT], True, "critical"),
    ],
)
def test_assess_risk(confidence, conflicts, needs_approval, level):
    risk = assess_risk(confidence, conflicts, threshold=70)

    assert risk.needs_approval is needs_approval
    assert risk.risk_level == level
    assert len(risk.reasons) == (confidence < 70) + bool(conflicts)


def approval_request():
    return ApprovalRequest(
        session_id="s1",
        risk_level="high",
        confidence=62,
        mappings=[FieldMapping(source_field="Title", target_field="name", confidence=62)],
        reasons=["Aggregate mapping confidence 62 is below 70"],
    )


@pytest.fixture
def mock_transport(monkeypatch):
    """Route every ``httpx.Client`` through a handler supplied by the test."""
    captured = {}
    real_client = httpx.Client

    def install(handler):
        def client_factory(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        monkeypatch.setattr(httpx, "Client", client_factory)

    captured["install"] = install
    return captured


def test_webhook_submission_is_signed(mock_transport):
    seen = {}

    def handler(request):
        seen["body"] = request.content.decode()
        seen["signature"] = request.headers["X-Webhook-Signature"]
        return httpx.Response(201, json={"requestId": "apr-42"})

    mock_transport["install"](handler)
    gate = WebhookApprovalGate("https://approvals.example.com/hooks", secret="s3cret")

    assert gate.submit(approval_request()) == "apr-42"
    assert seen["signature"] == f"sha256={sign_payload(seen['body'], 's3cret')}"
    body = json.loads(seen["body"])
    assert body["sessionId"] == "s1"
    assert body["riskLevel"] == "high"
    assert body["mappings"][0]["target_field"] == "name"


def test_webhook_error_status_raises_network_error(mock_transport):
    mock_transport["install"](lambda request: httpx.Response(503, text="maintenance"))
    gate = WebhookApprovalGate("https://approvals.example.com/hooks")

    with pytest.raises(NetworkError) as excinfo:
        gate.submit(approval_request())
    assert excinfo.value.code == "approval_http_error"
    assert excinfo.value.recoverable


def test_webhook_connection_failure_raises_network_error(mock_transport):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    mock_transport["install"](handler)

    with pytest.raises(NetworkError):
        WebhookApprovalGate("https://approvals.example.com/hooks").submit(approval_request())


def test_logging_gate_returns_local_id():
    assert LoggingApprovalGate().submit(approval_request()).startswith("local-")
