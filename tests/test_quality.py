import pytest

from catalog.models import DetailPayload, PriceTier
from catalog.quality import QualityTier, classify, summarize


def _detail(attribute_count: int) -> DetailPayload:
    return DetailPayload(attributes=[(f"Label {i}", f"Value {i}") for i in range(attribute_count)])


def test_classify_none_is_missing():
    assert classify(None) == QualityTier.MISSING


def test_classify_empty_attributes_is_bad():
    assert classify(DetailPayload()) == QualityTier.BAD
    assert classify({"attributes": []}) == QualityTier.BAD


@pytest.mark.parametrize(
    "count, expected",
    [
        (1, QualityTier.PARTIAL),
        (3, QualityTier.PARTIAL),
        (9, QualityTier.PARTIAL),
        (10, QualityTier.GOOD),
        (25, QualityTier.GOOD),
    ],
)
def test_classify_by_attribute_count(count, expected):
    assert classify(_detail(count)) == expected


def test_classify_accepts_plain_dicts():
    payload = {"attributes": [["Material", "Steel"]] * 10}
    assert classify(payload) == QualityTier.GOOD


def test_classify_is_deterministic():
    detail = _detail(4)
    assert {classify(detail) for _ in range(5)} == {QualityTier.PARTIAL}


def test_custom_good_threshold():
    assert classify(_detail(5), good_threshold=5) == QualityTier.GOOD
    assert classify(_detail(4), good_threshold=5) == QualityTier.PARTIAL


def test_invalid_threshold_rejected():
    with pytest.raises(ValueError):
        classify(_detail(1), good_threshold=0)


def test_refresh_rank_orders_tiers():
    ranked = sorted(QualityTier, key=lambda tier: tier.refresh_rank)
    assert ranked == [QualityTier.MISSING, QualityTier.BAD, QualityTier.PARTIAL, QualityTier.GOOD]


def test_summarize_counts_attributes_and_tiers():
    detail = _detail(3)
    detail.price_tiers = [PriceTier(min_qty=1, max_qty=9, price_text="$2"), PriceTier(min_qty=10, price_text="$1")]
    summary = summarize(detail)
    assert summary.attribute_count == 3
    assert summary.price_tier_count == 2
    assert summary.quality_tier == QualityTier.PARTIAL
    assert summary.to_dict()["quality_tier"] == "PARTIAL"


def test_summarize_missing_detail():
    summary = summarize(None)
    assert (summary.attribute_count, summary.price_tier_count, summary.quality_tier) == (
        0,
        0,
        QualityTier.MISSING,
    )


def test_listing_tier_honours_configured_threshold(make_listing):
    listing = make_listing(detail=_detail(8))

    assert listing.quality_tier() == QualityTier.PARTIAL
    assert listing.quality_tier(8) == QualityTier.GOOD
    assert make_listing().quality_tier(1) == QualityTier.MISSING
