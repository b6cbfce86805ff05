"""
Free-form note lines.

LanguageParser runs a fixed sequence of stages over a line and returns the
first result: variable-substituted arithmetic, variable assignment, date
arithmetic, calendar events, ISO week ranges, date-span unit counts,
numbers and percentages (including "sum of ..." style phrases) and
proportions. A line every stage declines has no result.
"""

import logging
import re
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from shared.errors import ExpressionError
from services.parser_service.date_tagger import (
    DateTagger,
    add_offset,
    count_units,
    format_long,
    format_timestamp,
    week_range,
)
from services.parser_service.event_extractor import extract_event, has_event_language
from services.parser_service.expression import PREDEFINED_FUNCTIONS, evaluate, is_pure_math, normalize_number
from services.parser_service.results import ParsedLineResult
from services.parser_service.variables import VariableEnvironment

logger = logging.getLogger(__name__)

CACHE_SIZE_LIMIT = 1000

VARIABLE_ASSIGNMENT = re.compile(r"^([A-Za-z_]\w*)\s*[:=]\s*(.+)$")
DATE_ARITHMETIC = re.compile(
    r"^(.*?)\s*(?<!\d)([+\-])\s*(\d+)\s*(days?|workdays?|weeks?|months?|years?)\s*$", re.IGNORECASE
)
WEEK_NUMBER = re.compile(r"\bweek\s*(\d+)", re.IGNORECASE)
PROPORTION = re.compile(
    r"if\s+(\d+(?:\.\d+)?)\s*([a-zA-Z]+)\s+requires\s+(\d+(?:\.\d+)?)\s*([a-zA-Z]+)\s+than\s+"
    r"(\d+(?:\.\d+)?)\s*([a-zA-Z]+)\s+requires\s*\?\?",
    re.IGNORECASE,
)
PERCENTAGE = re.compile(r"(\d+(?:\.\d+)?)%")
PERCENTAGE_OF = re.compile(r"%\s+of\s+")
NUMBER = re.compile(r"\d+(?:\.\d+)?")

COUNT_UNITS = {"days", "workdays", "weeks", "months", "years"}

# "X + Y%" means X increased by Y percent of X
PERCENT_REWRITES = [
    (re.compile(r"(\d+(?:\.\d+)?)\s*\+\s*(\d+(?:\.\d+)?)%"), r"\1 + (\1 * \2 / 100)"),
    (re.compile(r"(\d+(?:\.\d+)?)\s*-\s*(\d+(?:\.\d+)?)%"), r"\1 - (\1 * \2 / 100)"),
    (re.compile(r"(\d+(?:\.\d+)?)\s*\*\s*(\d+(?:\.\d+)?)%"), r"\1 * (\2 / 100)"),
    (re.compile(r"(\d+(?:\.\d+)?)\s*/\s*(\d+(?:\.\d+)?)%"), r"\1 / (\2 / 100)"),
]

NATURAL_LANGUAGE_FUNCTIONS = {
    "sum": ["sum of", "total of", "add"],
    "avg": ["average of", "mean of", "avg of"],
    "median": ["median of"],
    "stddev": ["standard deviation of", "std dev of", "stddev of"],
    "factorial": ["factorial of"],
    "percentage": ["percentage of", "percent of"],
    "roi": ["return on investment of", "roi of", "return on"],
    "compound_interest": ["compound interest of", "compound interest", "interest on"],
    "break_even": ["break even point of", "break-even of", "break even"],
    "velocity": ["velocity of", "speed of"],
    "burn_rate": ["burn rate of", "burning rate of", "burn rate"],
    "pert": ["pert of"],
    "cycle_time": ["cycle time of"],
    "lead_time": ["lead time of"],
    "communication_channels": ["comms channels of", "communication channels of"],
    "resource_utilization": ["resource utilization of"],
    "resource_overallocation": ["resource allocation of"],
    "variance": ["variance of"],
}

Resolver = Callable[[str], Optional[ParsedLineResult]]


class LanguageParser:
    """
    Interpret a natural-language line.

    Args:
        environment: Document variables, read for substitution and written by
            assignments
        tagger: Date phrase finder, which also carries the timezone and clock
        resolver: Evaluates the right-hand side of an assignment; defaults to
            this parser, the interpreter passes its full routing pipeline
    """

    def __init__(self, environment: VariableEnvironment, tagger: DateTagger, resolver: Optional[Resolver] = None):
        self.environment = environment
        self.tagger = tagger
        self.resolver = resolver or self.parse
        self._cache: "OrderedDict[Tuple[str, str], ParsedLineResult]" = OrderedDict()

    @property
    def timezone(self) -> str:
        return self.tagger.timezone

    def parse(self, text: str, line_number: Optional[int] = None) -> Optional[ParsedLineResult]:
        result = self._substituted_math(text)
        if result is not None:
            return result

        result = self._assignment(text)
        if result is not None:
            return result

        cache_key = (text, self.tagger.today().to_date_string())
        cached = self._cache.get(cache_key)
        if cached is not None:
            self._cache.move_to_end(cache_key)
            return cached

        result = self._date_arithmetic(text)
        if result is not None:
            return result

        spans = self.tagger.find_dates(text)
        if has_event_language(text, spans):
            result = extract_event(text, spans, line_number)
            if result is not None:
                return result

        result = self._week_range(text)
        if result is not None:
            return result

        if spans:
            result = self._date_span(text, spans, cache_key)
            if result is not None:
                return result

        result = self._numbers_and_percentages(text)
        if result is not None:
            return result

        return self._proportion(text)

    def clear_cache(self) -> None:
        self._cache.clear()

    def _substituted_math(self, text: str) -> Optional[ParsedLineResult]:
        expression = self.environment.substitute(text)
        if not is_pure_math(expression):
            return None
        try:
            return ParsedLineResult(value=evaluate(expression))
        except ExpressionError:
            return None

    def _assignment(self, text: str) -> Optional[ParsedLineResult]:
        match = VARIABLE_ASSIGNMENT.match(text.strip())
        if not match:
            return None

        name, expression = match.group(1).strip(), match.group(2).strip()
        result = self.resolver(expression)
        if result is None or result.is_error:
            return None
        if result.is_numeric:
            self.environment.set(name, result.value)
        return result

    def _date_arithmetic(self, text: str) -> Optional[ParsedLineResult]:
        match = DATE_ARITHMETIC.match(text.strip())
        if not match or not match.group(1).strip():
            return None

        spans = self.tagger.find_dates(match.group(1).strip())
        if not spans:
            return None

        amount = int(match.group(3))
        if match.group(2) == "-":
            amount = -amount
        shifted = add_offset(spans[0].start, match.group(4), amount)
        return ParsedLineResult(value=format_timestamp(shifted, self.timezone))

    def _week_range(self, text: str) -> Optional[ParsedLineResult]:
        match = WEEK_NUMBER.search(text)
        if not match:
            return None

        bounds = week_range(int(match.group(1)), self.tagger.today())
        if bounds is None:
            return None
        start, end = bounds
        return ParsedLineResult(value=f"{start.to_date_string()} - {end.to_date_string()}")

    def _date_span(self, text: str, spans, cache_key) -> Optional[ParsedLineResult]:
        words = re.findall(r"[A-Za-z]+", text)
        last_word = words[-1].lower() if words else ""

        if last_word in COUNT_UNITS:
            span = spans[0]
            result = ParsedLineResult(value=count_units(last_word, span.start, span.end))
            if len(self._cache) >= CACHE_SIZE_LIMIT:
                self._cache.popitem(last=False)
            self._cache[cache_key] = result
            return result

        phrase = self.tagger.parse_phrase(text)
        if phrase is not None:
            return ParsedLineResult(value=format_long(phrase.start))
        return None

    def _numbers_and_percentages(self, text: str) -> Optional[ParsedLineResult]:
        expression = self.environment.substitute(text)
        if not NUMBER.search(expression):
            return None

        if "%" in expression and any(op in expression for op in "+-*/"):
            for pattern, replacement in PERCENT_REWRITES:
                expression = pattern.sub(replacement, expression)

        arithmetic = PERCENTAGE_OF.sub("% * ", expression)
        arithmetic = PERCENTAGE.sub(lambda m: str(float(m.group(1)) / 100), arithmetic)
        if is_pure_math(arithmetic):
            try:
                return ParsedLineResult(value=evaluate(arithmetic))
            except ExpressionError:
                return None

        clean_text = re.sub(r"\s+", " ", re.sub(r"[.,](?!\d)", " ", expression.lower())).strip()
        for name, phrases in NATURAL_LANGUAGE_FUNCTIONS.items():
            if not any(re.search(rf"\b{re.escape(phrase)}\b", clean_text) for phrase in phrases):
                continue
            numbers = NUMBER.findall(clean_text)
            if not numbers:
                continue
            try:
                return ParsedLineResult(value=evaluate(f"{name}({', '.join(numbers)})", PREDEFINED_FUNCTIONS))
            except ExpressionError as e:
                logger.debug(f"Could not apply {name} to {numbers}: {e}")
                return None
        return None

    def _proportion(self, text: str) -> Optional[ParsedLineResult]:
        match = PROPORTION.search(text)
        if not match:
            return None

        x1, _, y1, unit2, x2, unit3 = match.groups()
        y2 = float(y1) * float(x2) / float(x1) if float(x1) else None
        if y2 is None:
            return None
        return ParsedLineResult(value=f"{normalize_number(float(x2))} {unit3} requires {y2:.2f} {unit2}")
