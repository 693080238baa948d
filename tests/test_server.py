"""
HTTP API tests through FastAPI's TestClient.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from core import Settings, now_utc
from server import create_app
from service import build_components

AUTHOR = {"X-User-Id": "author", "X-Username": "author"}


@pytest.fixture
def client(tmp_path):
    settings = Settings(db_path=str(tmp_path / "api.sqlite3"))
    app = create_app(settings, build_components(settings))
    with TestClient(app) as c:
        yield c


def create_schedule(client):
    r = client.post(
        "/api/schedules",
        json={
            "guild_id": "g1",
            "channel_id": "c1",
            "title": "Dinner",
            "dates": ["Fri", "Sat"],
            "deadline": (now_utc() + timedelta(days=2)).isoformat(),
        },
        headers=AUTHOR,
    )
    assert r.status_code == 201, r.text
    return r.json()


def test_create_and_get(client):
    s = create_schedule(client)
    r = client.get(f"/api/schedule/{s['id']}", params={"guild_id": "g1"})
    assert r.status_code == 200
    assert [d["datetime"] for d in r.json()["dates"]] == ["Fri", "Sat"]


def test_missing_schedule_is_404(client):
    r = client.get("/api/schedule/nope", params={"guild_id": "g1"})
    assert r.status_code == 404
    assert r.json()["detail"]["kind"] == "not_found"


def test_full_and_partial_votes(client):
    s = create_schedule(client)
    fri, sat = (d["id"] for d in s["dates"])
    user = {"X-User-Id": "u1", "X-Username": "alice"}

    r = client.put(
        f"/api/schedule/{s['id']}/responses",
        params={"guild_id": "g1"},
        json={"date_statuses": {fri: "ok", sat: "maybe"}},
        headers=user,
    )
    assert r.status_code == 200, r.text

    r = client.patch(
        f"/api/schedule/{s['id']}/responses/{sat}",
        params={"guild_id": "g1"},
        json={"status": "ok"},
        headers=user,
    )
    assert r.json()["date_statuses"] == {fri: "ok", sat: "ok"}

    summary = client.get(f"/api/schedule/{s['id']}/summary", params={"guild_id": "g1"}).json()
    assert summary["total_response_users"] == 1
    assert summary["optimal_date_id"] == fri
    assert summary["response_counts"][sat]["yes"] == 1


def test_incomplete_full_submission_is_400(client):
    s = create_schedule(client)
    r = client.put(
        f"/api/schedule/{s['id']}/responses",
        params={"guild_id": "g1"},
        json={"date_statuses": {s["dates"][0]["id"]: "ok"}},
        headers={"X-User-Id": "u1"},
    )
    assert r.status_code == 400


def test_close_rules(client):
    s = create_schedule(client)
    url = f"/api/schedule/{s['id']}/close"
    assert client.post(url, params={"guild_id": "g1"}, headers={"X-User-Id": "other"}).status_code == 403
    assert client.post(url, params={"guild_id": "g1"}, headers=AUTHOR).json()["status"] == "closed"
    assert client.post(url, params={"guild_id": "g1"}, headers=AUTHOR).status_code == 409

    r = client.patch(
        f"/api/schedule/{s['id']}/responses/{s['dates'][0]['id']}",
        params={"guild_id": "g1"},
        json={"status": "ok"},
        headers={"X-User-Id": "u1"},
    )
    assert r.status_code == 409


def test_missing_user_header_is_401(client):
    s = create_schedule(client)
    r = client.post(f"/api/schedule/{s['id']}/close", params={"guild_id": "g1"})
    assert r.status_code == 401
