import pytest

from sqlite_eml_exporter import normalize_text

@pytest.mark.parametrize("value", [None, ""])
def test_missing_text_becomes_empty(value):
    assert normalize_text(value) == ""

def test_strips_bom_and_non_breaking_spaces():
    assert normalize_text("\ufeffHello\u00a0world") == "Hello world"

@pytest.mark.parametrize(
    "broken, fixed",
    [
        ("It\u00e2\u20ac\u2122s", "It's"),
        ("\u00e2\u20ac\u02dcquoted\u00e2\u20ac\u2122", "'quoted'"),
        ("\u00e2\u20ac\u0153Hi\u00e2\u20ac\u009d", '"Hi"'),
        ("10\u00e2\u20ac\u00afkm", "10 km"),
        ("a\u00c2\u00a0b", "a b"),
        ("caf\u00c2\u00a9", "caf\u00a9"),
    ],
)
def test_repairs_known_mis_encoded_punctuation(broken, fixed):
    assert normalize_text(broken) == fixed

def test_leaves_regular_accents_alone():
    text = "Cr\u00e8me br\u00fbl\u00e9e \u00e0 No\u00ebl"
    assert normalize_text(text) == text
