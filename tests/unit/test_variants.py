"""Unit tests for canonical variant keys."""
from src.adlayer_core.cache.variants import VariantKey, derive_variants


WINDOW = ("date_preset", "since", "until")


def test_variant_key_is_order_independent():
    a = VariantKey.of({"mode": "fast", "breakdowns": "gender,age", "date_preset": "last_7d"})
    b = VariantKey.of({"date_preset": "last_7d", "breakdowns": ["age", "gender"], "mode": "fast"})

    assert a == b
    assert a.encode() == "breakdowns:age,gender|date_preset:last_7d|mode:fast"


def test_variant_key_drops_empty_values_and_canonicalizes_bools():
    key = VariantKey.of({"since": None, "until": "", "strict": True, "mode": " fast "})

    assert key.as_dict() == {"mode": "fast", "strict": "1"}


def test_variant_key_prefix():
    assert VariantKey.of({"mode": "fast"}, prefix="latest").encode() == "latest:mode:fast"
    assert VariantKey.of({}, prefix="latest").encode() == "latest"


def test_derive_variants_default_window_not_strict():
    variants = derive_variants(
        {"mode": "fast", "date_preset": "last_30d"},
        WINDOW,
        default_window={"date_preset": "last_30d"},
    )

    assert not variants.is_strict
    assert variants.broad.as_dict() == {"mode": "fast", "date_preset": "last_30d"}
    assert variants.latest.encode() == "latest:mode:fast"
    assert variants.exact != variants.broad


def test_derive_variants_explicit_preset_is_strict():
    variants = derive_variants(
        {"mode": "fast", "date_preset": "last_7d"},
        WINDOW,
        default_window={"date_preset": "last_30d"},
    )

    assert variants.is_strict
    assert variants.exact.as_dict()["date_preset"] == "last_7d"
    assert variants.broad.as_dict()["date_preset"] == "last_30d"


def test_derive_variants_strict_flag_without_default_window():
    relaxed = derive_variants({"mode": "fast"}, WINDOW)
    strict = derive_variants({"mode": "fast"}, WINDOW, strict_date=True)

    assert not relaxed.is_strict
    assert strict.is_strict
    assert relaxed.exact != strict.exact
    assert relaxed.latest == strict.latest
