"""
Document variables and the line dependency graph.

A VariableEnvironment is owned by one document and injected into every parser
call. The DependencyGraph tracks which line defines each variable and which
lines read it, so an edit can re-evaluate exactly the affected lines.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

logger = logging.getLogger(__name__)

VARIABLE_NAME = re.compile(r"^[A-Za-z_]\w*$")


def is_valid_name(name: str) -> bool:
    return bool(VARIABLE_NAME.match(name or ""))


class VariableEnvironment:
    """Flat name to value map shared by all lines of a document."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values: Dict[str, Any] = dict(values or {})

    def set(self, name: str, value: Any) -> None:
        name = name.strip()
        if not is_valid_name(name):
            raise ValueError(f"Invalid variable name: {name!r}")
        self._values[name] = value
        logger.debug(f"Bound variable {name} = {value}")

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def remove(self, name: str) -> bool:
        return self._values.pop(name, None) is not None

    def clear(self) -> None:
        self._values.clear()

    def names(self) -> List[str]:
        return list(self._values)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._values)

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def substitute(self, text: str) -> str:
        """
        Replace whole-word variable references with their values.

        Longer names are replaced first so that ``total`` is not clobbered by a
        shorter ``to``.
        """
        if not self._values:
            return text

        for name in sorted(self._values, key=len, reverse=True):
            value = str(self._values[name])
            text = re.sub(rf"\b{re.escape(name)}\b", lambda _: value, text)
        return text


class DependencyGraph:
    """
    Bipartite graph between variables and document lines.

    ``definitions`` maps a variable to the line that defines it,
    ``line_uses`` maps a line to the variables it reads and ``dependents`` is
    the reverse index of ``line_uses`` restricted to defined variables.
    """

    def __init__(self):
        self.definitions: Dict[str, int] = {}
        self.line_uses: Dict[int, Set[str]] = {}
        self.dependents: Dict[str, Set[int]] = {}

    def define(self, name: str, line_number: int) -> None:
        previous = self.definitions.get(name)
        if previous is not None and previous != line_number:
            logger.debug(f"Variable {name} moved from line {previous} to line {line_number}")
        self.definitions[name] = line_number

    def set_line_uses(self, line_number: int, names: Iterable[str]) -> None:
        """Replace the variables read by a line."""
        self._drop_line_uses(line_number)

        names = set(names)
        if not names:
            return
        self.line_uses[line_number] = names
        for name in names:
            if name in self.definitions:
                self.dependents.setdefault(name, set()).add(line_number)

    def lines_to_reprocess(self, line_number: int) -> List[int]:
        """
        Lines that must be re-evaluated after ``line_number`` changed.

        Follows chains of definitions, so a line reading ``b`` where
        ``b: a * 2`` is returned when the definition of ``a`` changes.
        """
        result: List[int] = []
        seen = {line_number}
        queue = [line_number]

        while queue:
            current = queue.pop(0)
            for name in self._defined_on(current):
                for dependent in sorted(self.dependents.get(name, ())):
                    if dependent in seen:
                        continue
                    seen.add(dependent)
                    result.append(dependent)
                    queue.append(dependent)
        return result

    def line_deleted(self, line_number: int) -> List[str]:
        """Forget a deleted line; returns the variables it used to define."""
        removed = self._defined_on(line_number)
        for name in removed:
            del self.definitions[name]
            self.dependents.pop(name, None)
            logger.debug(f"Removed variable {name} defined on deleted line {line_number}")

        self._drop_line_uses(line_number)
        return removed

    def remap(self, old_to_new: Mapping[int, int]) -> None:
        """Renumber lines after lines were inserted or removed above them."""
        self.definitions = {
            name: old_to_new[line]
            for name, line in self.definitions.items()
            if line in old_to_new
        }
        self.line_uses = {
            old_to_new[line]: names
            for line, names in self.line_uses.items()
            if line in old_to_new
        }

        dependents: Dict[str, Set[int]] = {}
        for name, lines in self.dependents.items():
            moved = {old_to_new[line] for line in lines if line in old_to_new}
            if moved:
                dependents[name] = moved
        self.dependents = dependents

    def clear(self) -> None:
        self.definitions.clear()
        self.line_uses.clear()
        self.dependents.clear()

    def _defined_on(self, line_number: int) -> List[str]:
        return [name for name, line in self.definitions.items() if line == line_number]

    def _drop_line_uses(self, line_number: int) -> None:
        for name in self.line_uses.pop(line_number, set()):
            lines = self.dependents.get(name)
            if lines is None:
                continue
            lines.discard(line_number)
            if not lines:
                del self.dependents[name]
