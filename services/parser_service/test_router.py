"""Tests for the line classifier."""

import pytest

from shared.errors import ValidationError
from services.parser_service.router import LANGUAGE, MATH, UNIT, ParserRouter


@pytest.fixture
def router():
    return ParserRouter()


@pytest.mark.parametrize("text, domain", [
    ("12 + 4 * 2", MATH),
    ("(3 - 1) / 4", MATH),
    ("5km to m", UNIT),
    ("convert 10 miles into km", UNIT),
    ("30C to F", UNIT),
    ("tomorrow", LANGUAGE),
    ("lunch next friday", LANGUAGE),
    ("3 days ago", LANGUAGE),
    ("sum of 1 2 4 5", LANGUAGE),
    ("team * hours", LANGUAGE),
])
def test_classify(router, text, domain):
    assert router.classify(text) == domain


@pytest.mark.parametrize("text", ["", "   ", "\t"])
def test_blank_input_is_rejected(router, text):
    with pytest.raises(ValidationError) as excinfo:
        router.classify(text)

    assert excinfo.value.error_type == "VALIDATION_ERROR"
