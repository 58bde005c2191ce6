"""Tests for experience submission and owner edits."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

import asyncio

from fastapi import FastAPI
from fastapi.testclient import TestClient

from discovery.api.deps import set_services
from discovery.api.v1.experiences import router as experiences_router
from discovery.main import discovery_exception_handler
from discovery.models.errors import DiscoveryError

ALICE = {"X-Caller-Id": "alice"}

PAYLOAD = {
    "user_id": "alice",
    "category": "ufo_uap",
    "title": "Silent disc",
    "narrative": "A silver disc hovered above the field for a minute.",
    "latitude": 46.2,
    "longitude": 6.14,
    "occurred_on": "2024-05-01",
    "tags": ["Disc", "field"],
}


def _create_app(services) -> TestClient:
    set_services(services)
    app = FastAPI()
    app.add_exception_handler(DiscoveryError, discovery_exception_handler)
    app.include_router(experiences_router)
    return TestClient(app)


def test_submit_and_fetch(services):
    client = _create_app(services)
    resp = client.post("/api/v1/experiences", json=PAYLOAD, headers=ALICE)
    assert resp.status_code == 201
    created = resp.json()
    assert created["tags"] == ["disc", "field"]

    fetched = client.get(f"/api/v1/experiences/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["title"] == "Silent disc"


def test_submit_requires_matching_caller(services):
    client = _create_app(services)
    assert client.post("/api/v1/experiences", json=PAYLOAD).status_code == 403
    assert client.post("/api/v1/experiences", json=PAYLOAD, headers={"X-Caller-Id": "bob"}).status_code == 403


def test_submit_validation(services):
    client = _create_app(services)
    bad = {**PAYLOAD, "category": "martians"}
    assert client.post("/api/v1/experiences", json=bad, headers=ALICE).status_code == 422
    bad = {**PAYLOAD, "latitude": 123.0}
    assert client.post("/api/v1/experiences", json=bad, headers=ALICE).status_code == 422


def test_owner_update_and_delete(services):
    client = _create_app(services)
    exp_id = client.post("/api/v1/experiences", json=PAYLOAD, headers=ALICE).json()["id"]

    resp = client.put(f"/api/v1/experiences/{exp_id}", json={**PAYLOAD, "title": "Silent disc (edited)"},
                      headers={"X-Caller-Id": "bob"})
    assert resp.status_code == 403

    resp = client.put(f"/api/v1/experiences/{exp_id}", json={**PAYLOAD, "title": "Silent disc (edited)"}, headers=ALICE)
    assert resp.status_code == 200
    assert resp.json()["title"] == "Silent disc (edited)"

    assert client.delete(f"/api/v1/experiences/{exp_id}", headers=ALICE).status_code == 204
    assert client.get(f"/api/v1/experiences/{exp_id}").status_code == 404


def test_private_experience_hidden_from_others(services):
    client = _create_app(services)
    exp_id = client.post(
        "/api/v1/experiences", json={**PAYLOAD, "visibility": "private"}, headers=ALICE
    ).json()["id"]
    assert client.get(f"/api/v1/experiences/{exp_id}", headers={"X-Caller-Id": "bob"}).status_code == 404
    assert client.get(f"/api/v1/experiences/{exp_id}", headers=ALICE).status_code == 200


def test_locked_experience_cannot_be_edited(services):
    client = _create_app(services)
    exp_id = client.post("/api/v1/experiences", json=PAYLOAD, headers=ALICE).json()["id"]
    asyncio.run(services.store.lock(exp_id))

    resp = client.put(f"/api/v1/experiences/{exp_id}", json=PAYLOAD, headers=ALICE)
    assert resp.status_code == 403
    assert "locked" in resp.json()["detail"]


def test_suggest_tags_from_draft(services):
    client = _create_app(services)
    resp = client.post("/api/v1/experiences/suggest-tags", json={
        "title": "Ghost in the woods",
        "narrative": "At night a shadow crossed the path.",
        "tags": ["Shadow"],
    })
    assert resp.status_code == 200
    assert resp.json() == {"tags": ["forest", "ghost", "night"]}

    resp = client.post("/api/v1/experiences/suggest-tags", json={
        "narrative": "Ein Geist im Wald bei Nacht.",
        "locale": "de",
    })
    assert resp.json() == {"tags": ["forest", "ghost", "night"]}
