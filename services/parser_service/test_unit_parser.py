"""Tests for unit conversion lines."""

import time

import pytest

from services.parser_service.unit_parser import (
    UnitConversionParser,
    convert_si_prefix,
    convert_temperature,
    convert_unit,
    format_si,
    normalize_unit,
)


@pytest.fixture
def parser():
    return UnitConversionParser()


class TestTemperature:
    def test_celsius_to_fahrenheit(self, parser):
        result = parser.parse("30C to F")

        assert result.value == 86
        assert result.unit == "F"
        assert result.formatted == "86.00°F"

    def test_lowercase_units(self, parser):
        assert parser.parse("300 k in c").formatted == "26.85°C"

    def test_same_unit_is_unchanged(self):
        result = convert_temperature(21.5, "C", "c")

        assert result.value == 21.5
        assert result.formatted is None

    def test_fahrenheit_to_kelvin(self):
        assert convert_temperature(32, "F", "K").value == pytest.approx(273.15)


class TestConversion:
    def test_kilometres_to_metres(self, parser):
        result = parser.parse("5km to m")

        assert result.value == 5000
        assert result.formatted == "5000.0000 m"

    def test_aliases_are_normalized(self):
        result = convert_unit(2, "pounds", "kilograms")

        assert result.unit == "kg"
        assert result.value == pytest.approx(0.90718474)

    def test_convert_prefix_is_accepted(self, parser):
        result = parser.parse("convert 3 miles into km")

        assert result.formatted == "4.8280 km"

    def test_incompatible_units_fall_back_and_decline(self):
        assert convert_unit(5, "kg", "m") is None

    def test_unknown_base_unit_uses_si_prefix(self):
        result = convert_unit(3, "kwug", "wug")

        assert result.value == 3000
        assert result.formatted == "3000.0000 wug"

    def test_si_prefix_requires_same_base(self):
        assert convert_si_prefix(1, "kwug", "mzog") is None

    def test_normalize_unit(self):
        assert normalize_unit("Liters") == "L"
        assert normalize_unit("furlong") == "furlong"

    def test_long_prose_before_conversion_is_fast(self, parser):
        started = time.perf_counter()
        result = parser.parse("Bring 2 notebooks before Wednesdays standup 5 kg to lb")
        padded = parser.parse("buy 2 " + "a" * 40 + " 3 kg to lb")

        assert time.perf_counter() - started < 1.0
        assert result.formatted == "11.0231 lb"
        assert padded.formatted == "6.6139 lb"


class TestScientificNotation:
    def test_kilo(self):
        assert format_si(1500).formatted == "1.50 k"

    def test_milli(self):
        assert format_si(0.00042).formatted == "0.42 m"

    def test_parse_reformats_exponent(self, parser):
        result = parser.parse("2.5e7")

        assert result.value == 25000000
        assert result.formatted == "25.00 M"


def test_prose_is_declined(parser):
    assert parser.parse("water the plants") is None
