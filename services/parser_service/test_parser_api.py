"""Tests for the parser service HTTP API."""

import pytest
from fastapi.testclient import TestClient

from services.parser_service import main


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("NOTEPAD_TIMEZONE", "UTC")

    with TestClient(main.app) as test_client:
        yield test_client


def test_health(client):
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["service"] == "parser_service"
    assert body["timezone"] == "UTC"


def test_parse_line(client):
    response = client.post("/api/v1/parse", json={"lineNumber": 0, "lineText": "12 + 4 * 2"})

    assert response.status_code == 200
    body = response.json()
    assert body["lineNumber"] == 0
    assert body["result"] == {"value": 20}
    assert body["variables"] == {"defines": [], "uses": []}


def test_parse_reports_dependent_lines(client):
    client.post("/api/v1/parse", json={"lineNumber": 0, "lineText": "hours:7.5"})
    client.post("/api/v1/parse", json={"lineNumber": 1, "lineText": "hours * 2"})

    body = client.post("/api/v1/parse", json={"lineNumber": 0, "lineText": "hours:8"}).json()

    assert body["variables"]["defines"] == ["hours"]
    assert body["reprocess"] == [1]


def test_classify(client):
    assert client.post("/api/v1/classify", json={"text": "5km to m"}).json() == {"domain": "unit"}


def test_classify_blank_is_unprocessable(client):
    response = client.post("/api/v1/classify", json={"text": "  "})

    assert response.status_code == 422
    assert response.json()["detail"]["type"] == "VALIDATION_ERROR"


def test_document(client):
    response = client.post("/api/v1/document", json={"lines": ["hours:7.5", "team:5", "team * hours"]})

    results = [line["result"] for line in response.json()]
    assert results == [{"value": 7.5}, {"value": 5}, {"value": 37.5}]


def test_clear_variables(client):
    client.post("/api/v1/document", json={"lines": ["rate:4"]})

    assert client.delete("/api/v1/variables").json() == {"cleared": True}
    body = client.post("/api/v1/parse", json={"lineNumber": 1, "lineText": "rate * 2"}).json()
    assert body["result"] == {"value": ""}


def test_delete_and_remap_lines(client):
    client.post("/api/v1/document", json={"lines": ["x:1", "y:2", "x + y"]})

    assert client.delete("/api/v1/lines/1").json() == {"removedVariables": ["y"]}
    assert client.post("/api/v1/lines/remap", json={"mapping": {"0": 0, "2": 1}}).json() == {"remapped": 2}
    assert main.worker.graph.definitions == {"x": 0}
