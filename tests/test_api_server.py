"""Tests for the operator API."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from voice_learning_pipeline.api_server import create_app
from voice_learning_pipeline.models import ImprovementProposal
from voice_learning_pipeline.scheduler import Scheduler


@pytest.fixture
def client(cycle, settings, now):
    scheduler = Scheduler(cycle, settings, clock=lambda: now)
    return TestClient(create_app(settings, scheduler))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["cycle_running"] is False


def test_run_cycle_and_list_log(client):
    response = client.post("/api/v1/cycles/run", json={})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["cycle_status"] == "insufficient_data"

    log = client.get("/api/v1/cycles").json()
    assert [entry["cycle_id"] for entry in log] == [body["cycle_id"]]


def test_run_refused_while_busy(settings):
    scheduler = MagicMock()
    scheduler.busy = True
    client = TestClient(create_app(settings, scheduler))

    response = client.post("/api/v1/cycles/run", json={"wait": True})

    assert response.status_code == 409


def test_pending_approval_lifecycle(client, cycle, now):
    assert client.get("/api/v1/approvals/pending").status_code == 404

    cycle.approvals.submit(
        ImprovementProposal(priority_fixes=["a", "b", "c", "d"]), "agent_grace", "cycle-1", now
    )
    pending = client.get("/api/v1/approvals/pending")
    assert pending.status_code == 200
    assert pending.json()["cycle_id"] == "cycle-1"

    rejected = client.post("/api/v1/approvals/reject")
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "rejected"
    assert client.get("/api/v1/approvals/pending").status_code == 404


def test_approve_without_pending(client):
    assert client.post("/api/v1/approvals/approve").status_code == 404


def test_approve_applies(client, cycle, store, now):
    cycle.approvals.submit(
        ImprovementProposal(new_sections={"CLOSING": "Help callers wrap up politely."}),
        "agent_grace",
        "cycle-1",
        now,
    )

    response = client.post("/api/v1/approvals/approve")

    assert response.status_code == 200
    assert response.json()["cycle_status"] == "applied"
    body = response.json()
    assert store.titles(body["knowledge_base_id"]) == ["CLOSING"]
    assert body["agent_ids"] == ["agent_grace"]
    assert body["knowledge_base_ids"] == {"agent_grace": body["knowledge_base_id"]}


def test_knowledge_base_stats(client, store):
    stats = client.get("/api/v1/knowledge-base").json()["knowledge_bases"]
    assert [s["agent_id"] for s in stats] == ["agent_grace"]
    assert stats[0]["kb_id"] is None
    assert stats[0]["total_documents"] == 0


def test_knowledge_base_stats_store_failure(client, store):
    store.fail.add("list")
    assert client.get("/api/v1/knowledge-base").status_code == 502
