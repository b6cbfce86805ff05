"""
Asynchronous request/response channel around the line interpreter.

The editor posts one ParseRequest per changed line and receives a
ParseResponse carrying the ghost-text result, the variables the line defines
and uses, and the dependent lines that need re-parsing. Requests are handled
one at a time by a background task that parses on a worker thread, so a slow
line never blocks the event loop.
"""

import asyncio
import logging
import re
import threading
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from services.parser_service.handler import LineInterpreter
from services.parser_service.results import FORMULA, ParsedLineResult, json_number
from services.parser_service.variables import DependencyGraph

logger = logging.getLogger(__name__)

DEFINITION = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*[:=]\s*(.+)$")
IDENTIFIER = re.compile(r"\b[A-Za-z_][A-Za-z0-9_]*\b")


class ParseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    line_number: Optional[int] = Field(None, alias="lineNumber", description="Document line being parsed")
    line_text: str = Field(..., alias="lineText", description="Raw text of the line")
    timezone: Optional[str] = Field(None, description="IANA timezone for date phrases")


class LineVariables(BaseModel):
    defines: List[str] = Field(default_factory=list, description="Variables assigned on this line")
    uses: List[str] = Field(default_factory=list, description="Known variables read by this line")


class ParseResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    line_number: Optional[int] = Field(None, alias="lineNumber")
    result: Dict[str, Any] = Field(default_factory=lambda: {"value": ""})
    variables: LineVariables = Field(default_factory=LineVariables)
    reprocess: List[int] = Field(default_factory=list, description="Dependent lines to parse again")


def serialize_result(result: Optional[ParsedLineResult]) -> Dict[str, Any]:
    """Shape a result for the editor; lines without a result show nothing."""
    if result is None:
        return {"value": ""}
    if result.type == FORMULA:
        return {"value": json_number(result.value) if result.is_numeric else (result.value or result.original)}
    return result.to_dict()


def line_variables(text: str, known: List[str]) -> LineVariables:
    defines = []
    match = DEFINITION.match(text)
    if match:
        defines.append(match.group(1))

    uses = []
    for name in IDENTIFIER.findall(text):
        if name in known and name not in defines and name not in uses:
            uses.append(name)
    return LineVariables(defines=defines, uses=uses)


class ParseWorker:
    """
    Background parser for one document.

    Args:
        interpreter: Line interpreter holding the document's variables
        graph: Variable dependency graph for the same document
    """

    def __init__(self, interpreter: Optional[LineInterpreter] = None, graph: Optional[DependencyGraph] = None):
        self.interpreter = interpreter or LineInterpreter()
        self.graph = graph or DependencyGraph()
        self._state_lock = threading.RLock()
        self._queue: "asyncio.Queue[Tuple[ParseRequest, asyncio.Future]]" = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            logger.warning("Parse worker already running")
            return

        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run(), name="parse-worker")
        logger.info("Parse worker started")

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.cancel()
        logger.info("Parse worker stopped")

    async def submit(self, request: ParseRequest) -> ParseResponse:
        """Queue a request and wait for its response."""
        if self._task is None:
            await self.start()

        future = asyncio.get_running_loop().create_future()
        await self._queue.put((request, future))
        return await future

    async def _run(self) -> None:
        while True:
            request, future = await self._queue.get()
            try:
                if future.done():
                    continue
                try:
                    response = await asyncio.to_thread(self.process, request)
                except Exception as e:
                    logger.error(f"Error processing line {request.line_number}: {e}", exc_info=True)
                    response = ParseResponse(lineNumber=request.line_number)
                future.set_result(response)
            finally:
                self._queue.task_done()

    def process(self, request: ParseRequest) -> ParseResponse:
        """Parse one line and update the dependency graph."""
        with self._state_lock:
            result = self.interpreter.handle_input(request.line_text, request.line_number, request.timezone)
            variables = line_variables(request.line_text, self.interpreter.environment.names())

            reprocess: List[int] = []
            if request.line_number is not None:
                for name in variables.defines:
                    if name in self.interpreter.environment:
                        self.graph.define(name, request.line_number)
                self.graph.set_line_uses(request.line_number, variables.uses)
                reprocess = self.graph.lines_to_reprocess(request.line_number)

        return ParseResponse(
            lineNumber=request.line_number,
            result=serialize_result(result),
            variables=variables,
            reprocess=reprocess,
        )

    def process_document(
        self,
        lines: List[str],
        timezone: Optional[str] = None,
        reset: bool = False,
    ) -> List[ParseResponse]:
        """Parse a whole document top to bottom so earlier definitions resolve later lines."""
        responses = []
        with self._state_lock:
            if reset:
                self.reset()
            for line_number, text in enumerate(lines):
                if not text.strip():
                    responses.append(ParseResponse(lineNumber=line_number))
                    continue
                request = ParseRequest(lineNumber=line_number, lineText=text, timezone=timezone)
                responses.append(self.process(request))
        return responses

    async def submit_document(
        self,
        lines: List[str],
        timezone: Optional[str] = None,
        reset: bool = False,
    ) -> List[ParseResponse]:
        """Parse a whole document on a worker thread."""
        return await asyncio.to_thread(self.process_document, lines, timezone, reset)

    def line_deleted(self, line_number: int) -> List[str]:
        """Drop a deleted line; variables it defined are removed as well."""
        with self._state_lock:
            removed = self.graph.line_deleted(line_number)
            for name in removed:
                self.interpreter.environment.remove(name)
        return removed

    def remap(self, old_to_new: Mapping[int, int]) -> None:
        with self._state_lock:
            self.graph.remap(old_to_new)

    def reset(self) -> None:
        """Forget all variables, e.g. when another page is opened."""
        with self._state_lock:
            self.interpreter.environment.clear()
            self.graph.clear()
