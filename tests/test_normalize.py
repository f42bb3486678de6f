import pytest

from flyer_wizard.errors import ValidationError
from flyer_wizard.normalize import (
    normalize_brand,
    normalize_text,
    normalize_unit,
    same_brand,
    sanitize_query,
    validate_query,
)


def test_normalize_text_folds_lithuanian_letters_and_case():
    assert normalize_text("  ŽEMAITIJOS   Pienas 2,5% ") == "zemaitijos pienas 2,5%"
    assert normalize_text("Šviežias sūris ąčęėįšųūž") == "sviezias suris aceeisuuz"


def test_sanitize_query_drops_control_characters_and_collapses_whitespace():
    assert sanitize_query("pie\x00nas\t\n  dvaro\x7f") == "pienas dvaro"
    assert sanitize_query(None) == ""


def test_normalize_text_handles_letters_without_combining_marks():
    assert normalize_text("Łaciaty Straße") == "laciaty strasse"


def test_same_brand_ignores_case_and_diacritics_but_not_missing_values():
    assert same_brand("Rokiškio", "ROKISKIO") is True
    assert same_brand("Dvaro", "Rokiskio") is False
    assert same_brand(None, None) is False
    assert same_brand("", "  ") is False
    assert normalize_brand("   ") is None


def test_normalize_unit_aliases():
    assert normalize_unit("Ltr") == "l"
    assert normalize_unit("gr.") == "g"
    assert normalize_unit("pcs") == "vnt"
    assert normalize_unit(None) is None


def test_validate_query_rejects_empty_and_overlong_queries():
    with pytest.raises(ValidationError) as exc:
        validate_query(" \x00 ")
    assert exc.value.code == "VALIDATION_ERROR"
    assert exc.value.details == {"field": "query"}

    with pytest.raises(ValidationError):
        validate_query("a" * 256)

    assert validate_query("Dvaro  PIENAS") == "dvaro pienas"
