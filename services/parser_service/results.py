"""Result types produced by the line parsers."""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

FORMULA = "formula"
EVENT = "event"
ERROR = "error"


def json_number(value: Any) -> Any:
    """Spell infinite and NaN floats as the editor shows them; JSON cannot carry them."""
    if isinstance(value, float) and not math.isfinite(value):
        if math.isnan(value):
            return "NaN"
        return "Infinity" if value > 0 else "-Infinity"
    return value


@dataclass
class ParsedLineResult:
    """Outcome of interpreting one line.

    ``type`` is None for a plain value, ``formula`` for ``=``-prefixed lines,
    ``event`` for calendar events (``original`` holds the event) and ``error``
    for rejected input.
    """
    value: Any = None
    type: Optional[str] = None
    original: Any = None
    unit: Optional[str] = None
    formatted: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @classmethod
    def failure(cls, message: str, error_type: str) -> "ParsedLineResult":
        return cls(type=ERROR, error=message, error_type=error_type)

    @property
    def is_error(self) -> bool:
        return self.type == ERROR

    @property
    def is_numeric(self) -> bool:
        return isinstance(self.value, (int, float)) and not isinstance(self.value, bool)

    def display(self) -> str:
        """Text shown inline next to the line."""
        if self.is_error:
            return ""
        if self.formatted is not None:
            return self.formatted
        return "" if self.value is None else str(json_number(self.value))

    def to_dict(self) -> Dict[str, Any]:
        if self.is_error:
            return {"success": False, "error": self.error, "type": self.error_type}

        data: Dict[str, Any] = {"value": json_number(self.value)}
        if self.type is not None:
            data["type"] = self.type
        if self.original is not None:
            data["original"] = self.original.to_dict() if hasattr(self.original, "to_dict") else self.original
        if self.unit is not None:
            data["unit"] = self.unit
        if self.formatted is not None:
            data["formatted"] = self.formatted
        return data
