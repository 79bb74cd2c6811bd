"""Tests for the learned mapping cache."""
from sqlalchemy import select

from catalog_importer.db.models.mapping_cache import MappingCacheEntry
from catalog_importer.services.mapping_cache import signature


def test_signature_normalizes_separators_and_case():
    assert signature("  SKU Code ") == "sku_code"
    assert signature("Unit-Price (USD)") == "unit_price_usd"
    assert signature("__") == ""


def test_record_inserts_then_increments(mapping_cache, session_factory):
    mapping_cache.record("SKU Code", "sku", "fuzzy", 82, accepted=True)
    mapping_cache.record("sku-code", "sku", "semantic", 79, accepted=True)

    with session_factory() as db:
        entries = db.scalars(select(MappingCacheEntry)).all()

    assert len(entries) == 1
    entry = entries[0]
    assert entry.source_signature == "sku_code"
    assert entry.usage_count == 2
    assert entry.success_rate == 1.0
    # Accepted uses refresh the stored confidence and strategy.
    assert (entry.confidence, entry.strategy) == (79, "semantic")


def test_rejections_lower_success_rate_until_filtered(mapping_cache):
    mapping_cache.record("maker", "brand", "semantic", 77, accepted=True)

    for _ in range(5):
        mapping_cache.record("maker", "brand", "semantic", 77, accepted=False)
    assert [hit.target_field for hit in mapping_cache.lookup("maker")] == ["brand"]

    mapping_cache.record("maker", "brand", "semantic", 77, accepted=False)
    assert mapping_cache.lookup("maker") == []


def test_rejection_keeps_previous_confidence(mapping_cache):
    mapping_cache.record("maker", "brand", "semantic", 77, accepted=True)
    mapping_cache.record("maker", "brand", "inference", 40, accepted=False)

    hit = mapping_cache.lookup("maker")[0]
    assert (hit.confidence, hit.strategy) == (77, "semantic")
    assert hit.success_rate == 0.8


def test_cache_hits_keep_the_original_strategy(mapping_cache):
    mapping_cache.record("Maker", "brand", "fuzzy", 81, accepted=True)
    mapping_cache.record("Maker", "brand", "cache", 81, accepted=True)
    mapping_cache.record("Maker", "brand", "cache", 81, accepted=True)

    hit = mapping_cache.lookup("maker")[0]
    assert (hit.strategy, hit.usage_count) == ("fuzzy", 3)
    stats = mapping_cache.statistics()
    assert "cache" not in stats
    assert stats["fuzzy"]["count"] == 1


def test_lookup_orders_by_confidence(mapping_cache):
    mapping_cache.record("title", "short_description", "semantic", 75, accepted=True)
    mapping_cache.record("title", "name", "manual", 90, accepted=True)

    assert [hit.target_field for hit in mapping_cache.lookup("title")] == ["name", "short_description"]


def test_blank_field_names_are_not_cached(mapping_cache):
    mapping_cache.record("  ", "name", "manual", 90, accepted=True)

    assert mapping_cache.statistics() == {}


def test_statistics_grouped_by_strategy(mapping_cache):
    mapping_cache.record("title", "name", "manual", 90, accepted=True)
    mapping_cache.record("maker", "brand", "manual", 80, accepted=True)
    mapping_cache.record("maker", "brand", "manual", 80, accepted=True)
    mapping_cache.record("qty", "stock", "semantic", 77, accepted=True)

    stats = mapping_cache.statistics()

    assert stats["manual"] == {"count": 2, "avg_confidence": 85.0, "total_usage": 3}
    assert stats["semantic"]["count"] == 1


def test_lookup_degrades_when_the_table_is_missing(mapping_cache, engine):
    MappingCacheEntry.__table__.drop(engine)

    assert mapping_cache.lookup("sku") == []
    assert mapping_cache.statistics() == {}
