import pytest

from listingcore.app.enrichment.vin_decoder import (
    VinConfidence,
    check_digit,
    decode,
    decode_model_year,
    is_well_formed,
)

GT3_RS_991_2 = "WP0AF2A9XKS149521"
GT3_991_1 = "WP0AC2A9XFS183456"
GT4_RS_982 = "WP0AE2A84NK255123"
GT3_996 = "WP0AC29974S692034"


def test_high_confidence_gt3_rs_decodes_all_fields():
    result = decode(GT3_RS_991_2)
    assert result.valid
    assert result.confidence is VinConfidence.HIGH
    assert result.model_year == 2019
    assert result.model == "911"
    assert result.trim == "GT3 RS"
    assert result.generation == "991.2"
    assert result.body_style == "Coupe"
    assert result.plant == "Stuttgart-Zuffenhausen"
    assert result.errors == ()


def test_ambiguous_variant_code_is_medium():
    result = decode(GT3_991_1)
    assert result.confidence is VinConfidence.MEDIUM
    assert (result.model_year, result.model, result.trim, result.generation) == (2015, "911", "GT3", "991.1")


def test_mid_engine_platform_uses_body_code_for_model():
    result = decode(GT4_RS_982)
    assert result.confidence is VinConfidence.HIGH
    assert result.model == "718 Cayman"
    assert result.trim == "GT4 RS"
    assert result.generation == "982"
    assert result.model_year == 2022


def test_numeric_position_seven_selects_older_year_cycle():
    result = decode(GT3_996)
    assert result.model_year == 2004
    assert result.generation == "996"
    assert result.confidence is VinConfidence.MEDIUM


def test_year_cycle_disambiguation():
    assert decode_model_year("WP0AA2A90KS000000") == 2019
    assert decode_model_year("WP0AA2990KS000000") == 1989


def test_check_digit_mismatch_downgrades_high_to_medium():
    tampered = GT3_RS_991_2[:8] + "1" + GT3_RS_991_2[9:]
    result = decode(tampered)
    assert result.valid
    assert result.confidence is VinConfidence.MEDIUM
    assert any("Check digit" in error for error in result.errors)


def test_check_digit_matches_known_vins():
    for vin in (GT3_RS_991_2, GT3_991_1, GT4_RS_982, GT3_996):
        assert check_digit(vin) == vin[8]


def test_future_model_year_is_low_confidence():
    result = decode(GT3_RS_991_2, reference_year=2016)
    assert result.valid
    assert result.confidence is VinConfidence.LOW


@pytest.mark.parametrize(
    "vin",
    [
        "",
        "WP0AF2A9XKS14952",  # 16 characters
        "WP0AF2A9XKS14952O",  # letter O
        "1FTFW1ET5DFC10312",  # not a Porsche manufacturer code
    ],
)
def test_invalid_vins_never_raise(vin):
    result = decode(vin)
    assert not result.valid
    assert result.confidence is VinConfidence.INVALID
    assert result.errors


def test_none_is_invalid():
    assert decode(None).confidence is VinConfidence.INVALID


def test_decode_normalizes_case_and_whitespace():
    result = decode(" wp0af2a9xks149521 ")
    assert result.vin == GT3_RS_991_2
    assert result.confidence is VinConfidence.HIGH


def test_unknown_platform_is_low_confidence_with_year_only():
    result = decode("WP1AA2A50KL000000")
    assert result.valid
    assert result.confidence is VinConfidence.LOW
    assert result.model_year == 2019
    assert result.model is None


def test_well_formed_check():
    assert is_well_formed(GT3_RS_991_2)
    assert not is_well_formed("N/A")
    assert not is_well_formed("WP0AF2A9XKS14952I")
