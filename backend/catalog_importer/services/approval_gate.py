"""Approval checkpoint for low-confidence or conflicting mappings.

The approval workflow itself lives elsewhere; the engine only submits a
request and later receives the decision through the sessions API.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
import uuid
from collections.abc import Sequence
from typing import NamedTuple, Protocol

import httpx

from catalog_importer.core.errors import NetworkError
from catalog_importer.schemas.approval import ApprovalRequest, RiskLevel
from catalog_importer.schemas.fields import MappingConflict

logger = logging.getLogger(__name__)
TIMEOUT_SECONDS = 10

_RISK_LEVELS: tuple[RiskLevel, ...] = ("low", "medium", "high", "critical")


class RiskAssessment(NamedTuple):
    needs_approval: bool
    risk_level: RiskLevel
    reasons: list[str]


def assess_risk(
    confidence: int,
    conflicts: Sequence[MappingConflict],
    threshold: int = 70,
) -> RiskAssessment:
    """Decide whether a human has to sign off on the mappings."""
    if confidence >= 85:
        level = 0
    elif confidence >= 70:
        level = 1
    elif confidence >= 50:
        level = 2
    else:
        level = 3

    reasons = []
    if confidence < threshold:
        reasons.append(f"Aggregate mapping confidence {confidence} is below {threshold}")
    if conflicts:
        level = min(level + 1, len(_RISK_LEVELS) - 1)
        contested = ", ".join(sorted({c.target_field for c in conflicts}))
        reasons.append(f"Several source fields claimed: {contested}")
    return RiskAssessment(bool(reasons), _RISK_LEVELS[level], reasons)


class ApprovalGate(Protocol):
    def submit(self, request: ApprovalRequest) -> str:
        """Hand the request to the approval workflow and return its id."""
        ...


def sign_payload(body: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


class WebhookApprovalGate:
    """POSTs approval requests to an external workflow endpoint."""

    def __init__(self, url: str, secret: str | None = None, timeout: float = TIMEOUT_SECONDS) -> None:
        self.url = url
        self.secret = secret
        self.timeout = timeout

    def submit(self, request: ApprovalRequest) -> str:
        body = json.dumps(request.to_wire(), sort_keys=True)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Catalog-Importer/1.0",
        }
        if self.secret:
            headers["X-Webhook-Signature"] = f"sha256={sign_payload(body, self.secret)}"

        start_time = time.time()
        try:
            with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                response = client.post(self.url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Approval request timeout after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Approval request failed: {e}") from e

        elapsed_ms = int((time.time() - start_time) * 1000)
        if not 200 <= response.status_code < 300:
            raise NetworkError(
                f"Approval endpoint returned HTTP {response.status_code}: {response.text[:200]}",
                code="approval_http_error",
            )

        request_id = None
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            request_id = payload.get("requestId") or payload.get("id")
        request_id = str(request_id) if request_id else uuid.uuid4().hex
        logger.info(
            f"Approval request {request_id} for session {request.session_id} delivered "
            f"(risk={request.risk_level}, time={elapsed_ms}ms)"
        )
        return request_id


class LoggingApprovalGate:
    """Used when no approval endpoint is configured: decisions arrive via the API only."""

    def submit(self, request: ApprovalRequest) -> str:
        request_id = f"local-{uuid.uuid4().hex}"
        logger.info(
            f"Session {request.session_id} awaits approval {request_id} "
            f"(risk={request.risk_level}, confidence={request.confidence}): {'; '.join(request.reasons)}"
        )
        return request_id
