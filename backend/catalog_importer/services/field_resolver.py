"""Multi-strategy field mapping resolution.

Every strategy runs for every source field and contributes candidates; the
merge step ranks them with the explicit ``STRATEGY_PRIORITY`` table, so the
outcome never depends on the order strategies happen to execute in.

Strategies and their confidence bands:

* exact      case-insensitive identical name                      95
* cache      learned decision for the field's signature          cached value
* fuzzy      rapidfuzz ratio vs. target names and synonyms       similarity * 89
* semantic   name pattern rules, boosted by type/content checks  75-79
* inference  external provider, only for fields still unresolved 40-89
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from rapidfuzz import fuzz

from catalog_importer.schemas.fields import (
    FieldMapping,
    MappingConflict,
    MappingStrategy,
    SourceFieldDescriptor,
    TargetField,
)
from catalog_importer.services.coercion import CoercionError, parse_integer, parse_number
from catalog_importer.services.inference_client import InferenceProvider
from catalog_importer.services.mapping_cache import MappingCache, signature
from catalog_importer.services.target_schema import TargetSchema

logger = logging.getLogger(__name__)

EXACT_CONFIDENCE = 95
FUZZY_CONFIDENCE_SCALE = 89
SEMANTIC_BASE_CONFIDENCE = 75
SEMANTIC_MAX_CONFIDENCE = 79
MANUAL_STRATEGY = "manual"

_NORMALIZE_RE = re.compile(r"[^a-z0-9]")


def normalize_name(name: str) -> str:
    """Lowercase and drop separators ("Unit-Price" -> "unitprice")."""
    return _NORMALIZE_RE.sub("", name.lower())


def _any_text(values: Sequence[Any], min_length: int) -> bool:
    return any(isinstance(v, str) and len(v.strip()) > min_length for v in values)


def _any_numeric(values: Sequence[Any]) -> bool:
    for value in values:
        try:
            parse_number(value)
        except CoercionError:
            continue
        return True
    return False


def _any_integer(values: Sequence[Any]) -> bool:
    for value in values:
        try:
            parse_integer(value)
        except CoercionError:
            continue
        return True
    return False


def _matches(pattern: str) -> Callable[[Sequence[Any]], bool]:
    compiled = re.compile(pattern)
    return lambda values: any(compiled.match(str(v).strip()) for v in values if v is not None)


@dataclass(frozen=True)
class SemanticRule:
    target_field: str
    pattern: re.Pattern
    reasoning: str
    content_check: Callable[[Sequence[Any]], bool]


SEMANTIC_RULES: tuple[SemanticRule, ...] = (
    SemanticRule("name", re.compile(r"(product|item|article)[\s_-]*(name|title)|^title$"),
                 "Product name pattern match", lambda v: _any_text(v, 3)),
    SemanticRule("sku", re.compile(r"sku|code|part[\s_-]*(no|num)|item[\s_-]*(no|num)|model"),
                 "SKU/product code pattern match", _matches(r"^[A-Za-z0-9\-_.]+$")),
    SemanticRule("gtin", re.compile(r"barcode|upc|ean|gtin|isbn"),
                 "Barcode/GTIN pattern match", _matches(r"^\d{8,14}$")),
    SemanticRule("price", re.compile(r"price|cost|amount"),
                 "Price field pattern match", _any_numeric),
    SemanticRule("compare_at_price", re.compile(r"msrp|rrp|compare|list[\s_-]*price|original[\s_-]*price|was[\s_-]*price"),
                 "Compare-at price pattern match", _any_numeric),
    SemanticRule("short_description", re.compile(r"desc|summary|blurb"),
                 "Description field pattern match", lambda v: _any_text(v, 10)),
    SemanticRule("long_description", re.compile(r"long[\s_-]*desc|details|body|full[\s_-]*desc"),
                 "Long description pattern match", lambda v: _any_text(v, 40)),
    SemanticRule("stock", re.compile(r"stock|inventory|quantity|qty|available|on[\s_-]*hand"),
                 "Stock/inventory pattern match", _any_integer),
    SemanticRule("low_stock_threshold", re.compile(r"low[\s_-]*stock|reorder|threshold|min[\s_-]*(stock|qty)"),
                 "Reorder threshold pattern match", _any_integer),
    SemanticRule("brand", re.compile(r"brand|manufacturer|vendor|make"),
                 "Brand pattern match", lambda v: _any_text(v, 1)),
    SemanticRule("category", re.compile(r"categor|department|collection|product[\s_-]*type|^type$"),
                 "Category pattern match", lambda v: _any_text(v, 1)),
    SemanticRule("status", re.compile(r"status|state|published"),
                 "Status pattern match", _matches(r"(?i)^(draft|review|live|archived)$")),
    SemanticRule("is_variant", re.compile(r"variant"),
                 "Variant flag pattern match", _matches(r"(?i)^(true|false|yes|no|y|n|0|1)$")),
    SemanticRule("parent_sku", re.compile(r"parent|master"),
                 "Parent product pattern match", _matches(r"^[A-Za-z0-9\-_.]+$")),
    SemanticRule("slug", re.compile(r"slug|handle|url[\s_-]*key|permalink"),
                 "Slug pattern match", _matches(r"^[a-z0-9]+(-[a-z0-9]+)*$")),
)


def rank_key(mapping: FieldMapping) -> tuple[int, int, str]:
    """Sort key: confidence desc, then strategy priority, then target name."""
    return (-mapping.confidence, mapping.priority, mapping.target_field)


@dataclass
class Resolution:
    mappings: list[FieldMapping] = field(default_factory=list)
    candidates: dict[str, list[FieldMapping]] = field(default_factory=dict)
    unmapped: list[str] = field(default_factory=list)
    conflicts: list[MappingConflict] = field(default_factory=list)
    confidence: int = 0

    @property
    def has_candidates(self) -> bool:
        return bool(self.mappings)


def aggregate_confidence(mappings: Sequence[FieldMapping]) -> int:
    if not mappings:
        return 0
    return round(sum(m.confidence for m in mappings) / len(mappings))


class FieldResolver:
    def __init__(
        self,
        cache: MappingCache | None = None,
        inference: InferenceProvider | None = None,
        *,
        fuzzy_floor: float = 0.7,
        min_confidence: int = 60,
        acceptance_confidence: int = 80,
        manual_confidence: int = 90,
        rules: Sequence[SemanticRule] = SEMANTIC_RULES,
    ) -> None:
        self.cache = cache
        self.inference = inference
        self.fuzzy_floor = fuzzy_floor
        self.min_confidence = min_confidence
        self.acceptance_confidence = acceptance_confidence
        self.manual_confidence = manual_confidence
        self.rules = tuple(rules)

    def resolve(
        self,
        source_fields: Sequence[SourceFieldDescriptor],
        target_schema: TargetSchema,
    ) -> list[FieldMapping]:
        return self.resolve_all(source_fields, target_schema).mappings

    def resolve_all(
        self,
        source_fields: Sequence[SourceFieldDescriptor],
        target_schema: TargetSchema,
    ) -> Resolution:
        candidates: dict[str, list[FieldMapping]] = {}
        for source in source_fields:
            found = [
                *self._exact(source, target_schema),
                *self._cached(source, target_schema),
                *self._fuzzy(source, target_schema),
                *self._semantic(source, target_schema),
            ]
            candidates[source.name] = found

        pending = [
            source
            for source in source_fields
            if not any(c.confidence >= self.acceptance_confidence for c in candidates[source.name])
        ]
        for suggestion in self._inferred(pending, target_schema):
            candidates[suggestion.source_field].append(suggestion)

        ranked = {name: self._rank(found) for name, found in candidates.items()}
        mappings, conflicts = self._assign(source_fields, ranked)
        mapped_sources = {m.source_field for m in mappings}
        resolution = Resolution(
            mappings=mappings,
            candidates=ranked,
            unmapped=[s.name for s in source_fields if s.name not in mapped_sources],
            conflicts=conflicts,
            confidence=aggregate_confidence(mappings),
        )
        logger.info(
            f"Resolved {len(mappings)}/{len(source_fields)} source fields "
            f"(confidence {resolution.confidence}, {len(conflicts)} conflict(s))"
        )
        return resolution

    def learn(self, suggested: Sequence[FieldMapping], final: Sequence[FieldMapping]) -> None:
        """Feed the outcome of a session back into the cache.

        A suggestion counts as accepted when the final mapping for its source
        field still points at the same target. Manual choices that differ from
        the suggestion are learned as accepted ``manual`` entries.
        """
        if self.cache is None:
            return
        final_by_source = {m.source_field: m for m in final}
        for mapping in suggested:
            chosen = final_by_source.get(mapping.source_field)
            accepted = chosen is not None and chosen.target_field == mapping.target_field
            self.cache.record(
                mapping.source_field,
                mapping.target_field,
                mapping.strategy.value if mapping.strategy else MANUAL_STRATEGY,
                mapping.confidence,
                accepted,
            )
        suggested_pairs = {(m.source_field, m.target_field) for m in suggested}
        for mapping in final:
            if mapping.is_manual and (mapping.source_field, mapping.target_field) not in suggested_pairs:
                self.cache.record(
                    mapping.source_field,
                    mapping.target_field,
                    MANUAL_STRATEGY,
                    self.manual_confidence,
                    True,
                )

    # -- strategies -------------------------------------------------------

    def _exact(self, source: SourceFieldDescriptor, schema: TargetSchema) -> list[FieldMapping]:
        name = source.name.strip().lower()
        return [
            FieldMapping(
                source_field=source.name,
                target_field=target.name,
                confidence=EXACT_CONFIDENCE,
                strategy=MappingStrategy.EXACT,
                reasoning="Exact field name match",
                metadata={"data_type_match": self._type_matches(source, target)},
            )
            for target in schema
            if target.name.lower() == name
        ]

    def _cached(self, source: SourceFieldDescriptor, schema: TargetSchema) -> list[FieldMapping]:
        if self.cache is None:
            return []
        return [
            FieldMapping(
                source_field=source.name,
                target_field=hit.target_field,
                confidence=hit.confidence,
                strategy=MappingStrategy.CACHE,
                reasoning=f"Learned mapping (used {hit.usage_count} times)",
                metadata={
                    "usage_count": hit.usage_count,
                    "success_rate": round(hit.success_rate, 3),
                    "learned_from": hit.strategy,
                },
            )
            for hit in self.cache.lookup(signature(source.name))
            if hit.target_field in schema
        ]

    def _fuzzy(self, source: SourceFieldDescriptor, schema: TargetSchema) -> list[FieldMapping]:
        normalized = normalize_name(source.name)
        if not normalized:
            return []
        found = []
        for target in schema:
            similarity = max(
                fuzz.ratio(normalized, normalize_name(option)) / 100
                for option in (target.name, *target.synonyms)
            )
            if similarity <= self.fuzzy_floor:
                continue
            found.append(
                FieldMapping(
                    source_field=source.name,
                    target_field=target.name,
                    confidence=min(100, round(similarity * FUZZY_CONFIDENCE_SCALE)),
                    strategy=MappingStrategy.FUZZY,
                    reasoning=f"Fuzzy name match ({round(similarity * 100)}% similarity)",
                    metadata={
                        "similarity": round(similarity, 3),
                        "data_type_match": self._type_matches(source, target),
                    },
                )
            )
        return found

    def _semantic(self, source: SourceFieldDescriptor, schema: TargetSchema) -> list[FieldMapping]:
        name = source.name.strip().lower()
        found = []
        for rule in self.rules:
            target = schema.get(rule.target_field)
            if target is None or not rule.pattern.search(name):
                continue
            type_match = self._type_matches(source, target)
            content_match = rule.content_check(source.sample_values)
            confidence = SEMANTIC_BASE_CONFIDENCE + (2 if type_match else 0) + (2 if content_match else 0)
            found.append(
                FieldMapping(
                    source_field=source.name,
                    target_field=target.name,
                    confidence=min(SEMANTIC_MAX_CONFIDENCE, confidence),
                    strategy=MappingStrategy.SEMANTIC,
                    reasoning=rule.reasoning,
                    metadata={
                        "pattern_match": True,
                        "data_type_match": type_match,
                        "content_match": content_match,
                    },
                )
            )
        return found

    def _inferred(
        self,
        pending: Sequence[SourceFieldDescriptor],
        schema: TargetSchema,
    ) -> list[FieldMapping]:
        if self.inference is None or not pending:
            return []
        try:
            suggestions = self.inference.suggest(pending, schema)
        except Exception as e:
            # Provider outages only cost us the extra suggestions.
            logger.warning(f"Inference strategy unavailable: {e}", exc_info=True)
            return []
        pending_names = {source.name for source in pending}
        return [
            FieldMapping(
                source_field=suggestion.source_field,
                target_field=suggestion.target_field,
                confidence=suggestion.confidence,
                strategy=MappingStrategy.INFERENCE,
                reasoning=suggestion.reasoning,
            )
            for suggestion in suggestions
            if suggestion.source_field in pending_names and suggestion.target_field in schema
        ]

    # -- merge ------------------------------------------------------------

    @staticmethod
    def _rank(found: Sequence[FieldMapping]) -> list[FieldMapping]:
        best: dict[str, FieldMapping] = {}
        for candidate in found:
            current = best.get(candidate.target_field)
            if current is None or rank_key(candidate) < rank_key(current):
                best[candidate.target_field] = candidate
        return sorted(best.values(), key=rank_key)

    def _assign(
        self,
        source_fields: Sequence[SourceFieldDescriptor],
        ranked: dict[str, list[FieldMapping]],
    ) -> tuple[list[FieldMapping], list[MappingConflict]]:
        """Pick one target per source field; a contested target goes to the stronger claim."""
        position = {source.name: index for index, source in enumerate(source_fields)}
        picks = [
            options[0]
            for options in ranked.values()
            if options and options[0].confidence >= self.min_confidence
        ]
        picks.sort(key=lambda m: (-m.confidence, m.priority, position[m.source_field]))

        claimed: dict[str, FieldMapping] = {}
        conflicts = []
        for pick in picks:
            winner = claimed.get(pick.target_field)
            if winner is None:
                claimed[pick.target_field] = pick
                continue
            conflicts.append(
                MappingConflict(
                    target_field=pick.target_field,
                    winner=winner.source_field,
                    loser=pick.source_field,
                    winner_confidence=winner.confidence,
                    loser_confidence=pick.confidence,
                )
            )
            logger.debug(
                f"'{pick.source_field}' lost '{pick.target_field}' to '{winner.source_field}', left unmapped"
            )
        mappings = sorted(claimed.values(), key=lambda m: position[m.source_field])
        return mappings, conflicts

    @staticmethod
    def _type_matches(source: SourceFieldDescriptor, target: TargetField) -> bool:
        return source.data_type == target.data_type
