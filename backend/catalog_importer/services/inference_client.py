"""Client for the external field-mapping inference provider."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, NamedTuple, Protocol

import httpx

from catalog_importer.core.errors import NetworkError
from catalog_importer.schemas.fields import SourceFieldDescriptor
from catalog_importer.services.target_schema import TargetSchema

logger = logging.getLogger(__name__)

MIN_INFERENCE_CONFIDENCE = 40
MAX_INFERENCE_CONFIDENCE = 89


class InferenceSuggestion(NamedTuple):
    source_field: str
    target_field: str
    confidence: int
    reasoning: str


class InferenceProvider(Protocol):
    def suggest(
        self,
        fields: Sequence[SourceFieldDescriptor],
        target_schema: TargetSchema,
    ) -> list[InferenceSuggestion]:
        ...


def clamp_confidence(value: Any) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return MIN_INFERENCE_CONFIDENCE
    return max(MIN_INFERENCE_CONFIDENCE, min(MAX_INFERENCE_CONFIDENCE, number))


def parse_suggestions(payload: Any) -> list[InferenceSuggestion]:
    """Read ``{"mappings": [{sourceField, targetField, confidence, reasoning}]}``.

    Malformed entries are dropped rather than failing the whole response.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("mappings"), list):
        return []
    suggestions = []
    for item in payload["mappings"]:
        if not isinstance(item, dict):
            continue
        source = item.get("sourceField")
        target = item.get("targetField")
        if not isinstance(source, str) or not isinstance(target, str):
            continue
        suggestions.append(
            InferenceSuggestion(
                source_field=source,
                target_field=target,
                confidence=clamp_confidence(item.get("confidence")),
                reasoning=str(item.get("reasoning") or "Inference provider suggestion"),
            )
        )
    return suggestions


class HttpInferenceClient:
    """POSTs source fields and the target schema to a JSON inference endpoint."""

    def __init__(self, url: str, api_key: str | None = None, timeout: float = 10.0) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    def suggest(
        self,
        fields: Sequence[SourceFieldDescriptor],
        target_schema: TargetSchema,
    ) -> list[InferenceSuggestion]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Catalog-Importer/1.0",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {
            "fields": [
                {
                    "name": field.name,
                    "dataType": field.data_type,
                    "sampleValues": list(field.sample_values),
                }
                for field in fields
            ],
            "targetFields": target_schema.describe(),
        }
        try:
            with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                response = client.post(self.url, json=body, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            raise NetworkError(f"Inference request timeout after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise NetworkError(
                f"Inference provider returned HTTP {e.response.status_code}",
                code="inference_http_error",
            ) from e
        except httpx.RequestError as e:
            raise NetworkError(f"Inference request failed: {e}") from e
        except ValueError as e:
            raise NetworkError("Inference provider returned invalid JSON", code="inference_bad_response") from e

        suggestions = parse_suggestions(payload)
        logger.info(f"Inference provider returned {len(suggestions)} suggestion(s) for {len(fields)} field(s)")
        return suggestions
