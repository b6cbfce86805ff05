"""
Entry point for interpreting a single line of a note.

LineInterpreter owns the parsers for one document. ``handle_input`` never
raises for bad input; failures come back as error results.
"""

import logging
from typing import Callable, Optional

import pendulum

from shared.config import get_default_timezone
from shared.errors import ExpressionError, ValidationError
from services.parser_service.date_tagger import DateTagger
from services.parser_service.expression import PREDEFINED_FUNCTIONS, describe_function, evaluate
from services.parser_service.language_parser import LanguageParser
from services.parser_service.math_parser import MathParser
from services.parser_service.results import FORMULA, ParsedLineResult
from services.parser_service.router import LANGUAGE, MATH, UNIT, ParserRouter
from services.parser_service.unit_parser import UnitConversionParser
from services.parser_service.variables import VariableEnvironment

logger = logging.getLogger(__name__)


class LineInterpreter:
    """
    Route lines to the math, unit or language parser.

    Args:
        environment: Document variables; a fresh environment when omitted
        timezone: Zone dates are resolved in; ``NOTEPAD_TIMEZONE`` when omitted
        clock: Returns the current time; injectable for tests
    """

    def __init__(
        self,
        environment: Optional[VariableEnvironment] = None,
        timezone: Optional[str] = None,
        clock: Optional[Callable[[], pendulum.DateTime]] = None,
    ):
        self.environment = environment if environment is not None else VariableEnvironment()
        self.tagger = DateTagger(timezone or get_default_timezone(), clock)
        self.router = ParserRouter()
        self.parsers = {
            MATH: MathParser(self.environment),
            UNIT: UnitConversionParser(),
            LANGUAGE: LanguageParser(self.environment, self.tagger, resolver=self._resolve),
        }

    @property
    def timezone(self) -> str:
        return self.tagger.timezone

    def set_timezone(self, timezone: str) -> None:
        if timezone != self.tagger.timezone:
            pendulum.timezone(timezone)
            self.tagger.timezone = timezone
            self.parsers[LANGUAGE].clear_cache()

    def handle_input(
        self,
        text: str,
        line_number: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> Optional[ParsedLineResult]:
        """
        Interpret one line.

        Args:
            text: The line as typed
            line_number: Position in the document, recorded on events
            timezone: Overrides the interpreter's timezone from now on

        Returns:
            The parsed result, an error result for rejected input, or None when
            no parser recognizes the line
        """
        try:
            if timezone:
                self.set_timezone(timezone)

            if text.startswith("="):
                return self._formula(text)

            domain = self.router.classify(text)
            return self.parsers[domain].parse(text, line_number)

        except ValidationError as e:
            return ParsedLineResult.failure(str(e), e.error_type)
        except Exception as e:
            logger.error(f"Failed to interpret line {line_number}: {e}", exc_info=True)
            return ParsedLineResult.failure(str(e), "UNKNOWN_ERROR")

    def _resolve(self, text: str) -> Optional[ParsedLineResult]:
        return self.handle_input(text)

    def _formula(self, text: str) -> Optional[ParsedLineResult]:
        formula = text[1:].strip()
        if not formula:
            return None

        expression = self.environment.substitute(formula)
        try:
            value = evaluate(expression, PREDEFINED_FUNCTIONS)
        except ExpressionError as e:
            logger.debug(f"Formula {formula!r} rejected: {e}")
            return None

        if callable(value):
            value = describe_function(formula, value)
        return ParsedLineResult(value=value, type=FORMULA, original=text)


def handle_input(text: str, line_number: Optional[int] = None, timezone: Optional[str] = None) -> Optional[ParsedLineResult]:
    """Interpret a line with a throwaway interpreter and no variables."""
    return LineInterpreter(timezone=timezone).handle_input(text, line_number)
