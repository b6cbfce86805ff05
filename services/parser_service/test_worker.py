"""Tests for the background parse worker."""

import asyncio
import threading

import pendulum
import pytest
from unittest.mock import patch

from services.parser_service.handler import LineInterpreter
from services.parser_service.worker import (
    ParseRequest,
    ParseResponse,
    ParseWorker,
    line_variables,
    serialize_result,
)
from services.parser_service.results import FORMULA, ParsedLineResult

NOW = pendulum.datetime(2024, 3, 15, 9, 30, tz="UTC")


@pytest.fixture
def worker():
    return ParseWorker(LineInterpreter(timezone="UTC", clock=lambda: NOW))


def request(line_number, text, **extra):
    return ParseRequest(lineNumber=line_number, lineText=text, **extra)


class TestSerialization:
    def test_no_result_is_empty_value(self):
        assert serialize_result(None) == {"value": ""}

    def test_numeric_formula_is_flattened(self):
        result = ParsedLineResult(value=6, type=FORMULA, original="=sum(1,2,3)")
        assert serialize_result(result) == {"value": 6}

    def test_function_formula_shows_description(self):
        result = ParsedLineResult(value="pert(optimistic, most_likely, pessimistic)", type=FORMULA, original="=pert")
        assert serialize_result(result) == {"value": "pert(optimistic, most_likely, pessimistic)"}

    def test_infinite_value_is_spelled_out(self):
        assert serialize_result(ParsedLineResult(value=float("inf"))) == {"value": "Infinity"}
        assert serialize_result(ParsedLineResult(value=float("-inf"), type=FORMULA, original="=x")) == {"value": "-Infinity"}

    def test_request_accepts_field_names(self):
        parsed = ParseRequest(line_number=2, line_text="x")
        assert (parsed.line_number, parsed.line_text) == (2, "x")

    def test_response_uses_camel_case(self):
        response = ParseResponse(lineNumber=1)
        assert response.model_dump(by_alias=True)["lineNumber"] == 1


def test_line_variables_only_reports_known_names():
    variables = line_variables("total: team * hours + bonus", ["team", "hours", "total"])

    assert variables.defines == ["total"]
    assert variables.uses == ["team", "hours"]


class TestProcess:
    def test_definitions_and_uses(self, worker):
        worker.process(request(0, "hours:7.5"))
        worker.process(request(1, "team:5"))

        response = worker.process(request(2, "team * hours"))

        assert response.result == {"value": 37.5}
        assert response.variables.uses == ["team", "hours"]
        assert worker.graph.definitions == {"hours": 0, "team": 1}

    def test_redefinition_lists_dependents(self, worker):
        worker.process_document(["a:2", "b: a * 3", "b + 1"])

        response = worker.process(request(0, "a:4"))

        assert response.variables.defines == ["a"]
        assert response.reprocess == [1, 2]

    def test_process_document_resolves_in_order(self, worker):
        responses = worker.process_document(["hours:7.5", "", "team:5", "team * hours"])

        assert [r.line_number for r in responses] == [0, 1, 2, 3]
        assert responses[1].result == {"value": ""}
        assert responses[3].result == {"value": 37.5}

    def test_error_result_is_serialized(self, worker):
        response = worker.process(request(None, " "))

        assert response.result == {"success": False, "error": "Empty input", "type": "VALIDATION_ERROR"}
        assert response.reprocess == []

    def test_line_deleted_removes_variable(self, worker):
        worker.process_document(["rate:3", "rate * 2"])

        assert worker.line_deleted(0) == ["rate"]
        assert "rate" not in worker.interpreter.environment
        assert worker.process(request(1, "rate * 2")).result == {"value": ""}

    def test_remap_and_reset(self, worker):
        worker.process_document(["x:1", "x + 1"])
        worker.remap({0: 1, 1: 2})

        assert worker.graph.lines_to_reprocess(1) == [2]
        worker.reset()
        assert worker.graph.definitions == {}
        assert len(worker.interpreter.environment) == 0


class TestAsyncChannel:
    @pytest.mark.asyncio
    async def test_submit_round_trip(self, worker):
        await worker.start()
        try:
            first = await worker.submit(request(0, "hours:7.5"))
            second = await worker.submit(request(1, "hours * 2"))
        finally:
            await worker.stop()

        assert first.result == {"value": 7.5}
        assert second.result == {"value": 15}
        assert worker.running is False

    @pytest.mark.asyncio
    async def test_submit_starts_worker(self, worker):
        response = await worker.submit(request(0, "12 + 4 * 2"))

        assert response.result == {"value": 20}
        assert worker.running is True
        await worker.stop()

    @pytest.mark.asyncio
    async def test_processing_failure_returns_empty_result(self, worker):
        with patch.object(ParseWorker, "process", side_effect=RuntimeError("boom")):
            response = await worker.submit(request(3, "anything"))
        await worker.stop()

        assert response.line_number == 3
        assert response.result == {"value": ""}

    @pytest.mark.asyncio
    async def test_timezone_is_applied(self, worker):
        response = await worker.submit(request(0, "2024-03-15 + 1 day", timezone="Asia/Tokyo"))
        await worker.stop()

        assert response.result == {"value": "2024-03-16 00:00:00 GMT+09:00"}

    @pytest.mark.asyncio
    async def test_slow_line_does_not_block_event_loop(self, worker):
        release = threading.Event()
        released = []
        parse = worker.process

        def slow_process(parse_request):
            released.append(release.wait(timeout=2))
            return parse(parse_request)

        worker.process = slow_process
        pending = asyncio.create_task(worker.submit(request(0, "12 + 4 * 2")))
        await asyncio.sleep(0.05)

        assert not pending.done()
        release.set()
        response = await asyncio.wait_for(pending, timeout=5)
        await worker.stop()

        assert released == [True]
        assert response.result == {"value": 20}

    @pytest.mark.asyncio
    async def test_submit_document_resets_and_parses_in_order(self, worker):
        worker.process_document(["stale:1"])

        responses = await worker.submit_document(["hours:7.5", "hours * 2"], reset=True)

        assert [r.result for r in responses] == [{"value": 7.5}, {"value": 15}]
        assert "stale" not in worker.interpreter.environment
