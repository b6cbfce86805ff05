"""
Unit conversion lines.

Three cases are tried in order: temperature between Celsius, Fahrenheit and
Kelvin; dimensional conversion through pint ("5 km to miles"), falling back to
a plain SI-prefix shift when pint does not know the pair; and reformatting of
scientific notation with the nearest SI prefix.
"""

import logging
import math
import re
from typing import Optional

import pint

from services.parser_service.expression import normalize_number
from services.parser_service.results import ParsedLineResult

logger = logging.getLogger(__name__)

_NUMBER = r"-?\d+\.?\d*(?:[eE][-+]?\d+)?"
_UNIT_TEXT = r"[a-zA-Z°/²³]+(?:\s+[a-zA-Z°/²³]+)*"

TEMPERATURE = re.compile(r"(-?\d+\.?\d*)\s*?([FCK])\s+(?:to|in|into)\s+?([FCK])\b", re.IGNORECASE)
UNIT_CONVERSION = re.compile(
    rf"(?:convert\s+)?({_NUMBER})\s*({_UNIT_TEXT})\s+(?:to|in|into)\s+({_UNIT_TEXT})", re.IGNORECASE
)
SI_NOTATION = re.compile(r"-?\d+\.?\d*[eE][-+]?\d+")
SI_PREFIXED_UNIT = re.compile(r"^([yzafpnμmcdhkMGTPEZY])?([a-zA-Z]+)$")

UNIT_ALIASES = {
    "meters": "m",
    "meter": "m",
    "kilometer": "km",
    "kilometers": "km",
    "centimeter": "cm",
    "centimeters": "cm",
    "millimeter": "mm",
    "millimeters": "mm",
    "mile": "mi",
    "miles": "mi",
    "foot": "ft",
    "feet": "ft",
    "inch": "inch",
    "inches": "inch",
    "pound": "lb",
    "pounds": "lb",
    "lbs": "lb",
    "kilogram": "kg",
    "kilograms": "kg",
    "gram": "g",
    "grams": "g",
    "second": "s",
    "seconds": "s",
    "minute": "min",
    "minutes": "min",
    "hour": "h",
    "hours": "h",
    "liter": "L",
    "liters": "L",
    "milliliter": "mL",
    "milliliters": "mL",
    "gallon": "gal",
    "gallons": "gal",
}

SI_PREFIXES = {
    "y": -24, "z": -21, "a": -18, "f": -15, "p": -12, "n": -9,
    "μ": -6, "m": -3, "c": -2, "d": -1,
    "": 0,
    "da": 1, "h": 2, "k": 3, "M": 6, "G": 9, "T": 12, "P": 15,
    "E": 18, "Z": 21, "Y": 24,
}

PREFIX_BY_EXPONENT = {exponent: prefix for prefix, exponent in SI_PREFIXES.items()}

TEMPERATURE_CONVERSIONS = {
    ("F", "C"): lambda f: (f - 32) * 5 / 9,
    ("F", "K"): lambda f: (f - 32) * 5 / 9 + 273.15,
    ("C", "F"): lambda c: (c * 9 / 5) + 32,
    ("C", "K"): lambda c: c + 273.15,
    ("K", "F"): lambda k: (k - 273.15) * 9 / 5 + 32,
    ("K", "C"): lambda k: k - 273.15,
}

ureg = pint.UnitRegistry()


def normalize_unit(unit: str) -> str:
    return UNIT_ALIASES.get(unit.lower(), unit)


def convert_temperature(value: float, from_unit: str, to_unit: str) -> ParsedLineResult:
    from_unit, to_unit = from_unit.upper(), to_unit.upper()
    if from_unit == to_unit:
        return ParsedLineResult(value=normalize_number(value))

    result = TEMPERATURE_CONVERSIONS[(from_unit, to_unit)](value)
    return ParsedLineResult(
        value=normalize_number(result),
        unit=to_unit,
        formatted=f"{result:.2f}°{to_unit}",
    )


def convert_si_prefix(value: float, from_unit: str, to_unit: str) -> Optional[ParsedLineResult]:
    """Convert between units that share a base and differ only by SI prefix."""
    from_match = SI_PREFIXED_UNIT.match(from_unit)
    to_match = SI_PREFIXED_UNIT.match(to_unit)
    if not from_match or not to_match or from_match.group(2) != to_match.group(2):
        return None

    scale = SI_PREFIXES[from_match.group(1) or ""] - SI_PREFIXES[to_match.group(1) or ""]
    result = value * 10 ** scale
    return ParsedLineResult(
        value=normalize_number(result),
        unit=to_unit,
        formatted=f"{result:.4f} {to_unit}",
    )


def convert_unit(value: float, from_unit: str, to_unit: str) -> Optional[ParsedLineResult]:
    """Dimensional conversion via pint, with an SI-prefix fallback."""
    source = normalize_unit(from_unit)
    target = normalize_unit(to_unit)

    try:
        result = ureg.Quantity(value, source).to(target).magnitude
    except (pint.errors.PintError, ValueError, TypeError, AttributeError) as e:
        logger.debug(f"pint could not convert {source} to {target}: {e}")
        return convert_si_prefix(value, from_unit, to_unit)

    return ParsedLineResult(
        value=normalize_number(result),
        unit=target,
        formatted=f"{result:.4f} {target}",
    )


def format_si(value: float) -> ParsedLineResult:
    """Express ``value`` with the SI prefix whose exponent is nearest its own."""
    exponent = math.floor(math.log10(abs(value))) if value else 0
    closest = min(PREFIX_BY_EXPONENT, key=lambda candidate: abs(candidate - exponent))
    adjusted = value * 10 ** -closest
    formatted = f"{adjusted:.2f} {PREFIX_BY_EXPONENT[closest]}".rstrip()
    return ParsedLineResult(value=normalize_number(value), formatted=formatted)


class UnitConversionParser:
    def parse(self, text: str, line_number: Optional[int] = None) -> Optional[ParsedLineResult]:
        match = TEMPERATURE.search(text)
        if match:
            value, from_unit, to_unit = match.groups()
            return convert_temperature(float(value), from_unit, to_unit)

        match = UNIT_CONVERSION.search(text)
        if match:
            value, from_unit, to_unit = match.groups()
            return convert_unit(float(value), from_unit.strip(), to_unit.strip())

        match = SI_NOTATION.search(text)
        if match:
            return format_si(float(match.group(0)))

        return None
