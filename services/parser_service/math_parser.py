"""Arithmetic lines, with document variables substituted first."""

import logging
from typing import Optional

from shared.errors import ExpressionError
from services.parser_service.expression import evaluate, is_pure_math
from services.parser_service.results import ParsedLineResult
from services.parser_service.variables import VariableEnvironment

logger = logging.getLogger(__name__)


class MathParser:
    """Evaluate a line when, after substitution, it is plain arithmetic."""

    def __init__(self, environment: VariableEnvironment):
        self.environment = environment

    def parse(self, text: str, line_number: Optional[int] = None) -> Optional[ParsedLineResult]:
        expression = self.environment.substitute(text)
        if not is_pure_math(expression):
            return None

        try:
            return ParsedLineResult(value=evaluate(expression))
        except ExpressionError as e:
            logger.debug(f"Line {line_number}: {e}")
            return None
