from __future__ import annotations

import random
from pathlib import Path

import pytest
from factories import HELPER, OWNER, SITTER, FrozenClock, make_insulin, make_pet, make_vet
from fastapi.testclient import TestClient

from cloud.api.main import create_app
from petsync.config import ServerConfig
from petsync.record_store import RecordStore


def _headers(caller_id: str, name: str | None = None) -> dict[str, str]:
    headers = {"X-Caller-ID": caller_id}
    if name:
        headers["X-Display-Name"] = name
    return headers


@pytest.fixture
def client(tmp_path: Path) -> TestClient:
    config = ServerConfig(db_path=str(tmp_path / "api.db"))
    app = create_app(config, store=RecordStore(config.db_path), clock=FrozenClock(), rng=random.Random(5))
    return TestClient(app)


def _bootstrap(client: TestClient) -> None:
    resp = client.post(
        "/sync",
        json={
            "pet_id": "pet-1",
            "watermark": None,
            "pets": [make_pet().to_json()],
            "insulin_logs": [make_insulin("log-1").to_json()],
            "vet_infos": [make_vet().to_json()],
        },
        headers=_headers(OWNER, "Olive"),
    )
    assert resp.status_code == 200


def _share(client: TestClient, tier: str, caller_id: str) -> str:
    resp = client.post("/share/generate", json={"pet_id": "pet-1", "tier": tier}, headers=_headers(OWNER))
    assert resp.status_code == 200
    code = resp.json()["code"]
    assert client.post("/share/redeem", json={"code": code}, headers=_headers(caller_id)).status_code == 200
    return code


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_missing_caller_header_is_bad_request(client: TestClient) -> None:
    resp = client.post("/sync", json={"pet_id": "pet-1"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "bad_request"

    blank = client.post("/sync", json={"pet_id": "pet-1"}, headers={"X-Caller-ID": "  "})
    assert blank.status_code == 400


def test_sync_creates_pet_and_returns_delta(client: TestClient) -> None:
    resp = client.post(
        "/sync",
        json={"pet_id": "pet-1", "pets": [make_pet().to_json()], "insulin_logs": [make_insulin("log-1").to_json()]},
        headers=_headers(OWNER),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["watermark"] == "2025-03-01T08:00:00.000000Z"
    assert body["pets"][0]["owner_id"] == OWNER
    assert body["pets"][0]["access_level"] == "owner"
    assert [log["id"] for log in body["insulin_logs"]] == ["log-1"]
    assert body["weight_logs"] == []


def test_sync_failures_are_structured(client: TestClient) -> None:
    missing = client.post("/sync", json={"pet_id": "pet-9"}, headers=_headers(OWNER))
    assert missing.status_code == 404
    assert missing.json() == {"error": "not_found", "message": "pet not found"}

    _bootstrap(client)
    denied = client.post("/sync", json={"pet_id": "pet-1"}, headers=_headers(SITTER))
    assert denied.status_code == 403
    assert denied.json()["error"] == "forbidden"

    malformed = client.post(
        "/sync", json={"pet_id": "pet-1", "insulin_logs": [{"pet_id": "pet-1"}]}, headers=_headers(OWNER)
    )
    assert malformed.status_code == 400
    assert malformed.json()["error"] == "bad_request"

    not_json = client.post("/sync", content=b"[1, 2", headers={**_headers(OWNER), "Content-Type": "application/json"})
    assert not_json.status_code == 400


def test_sync_rejects_out_of_range_numbers(client: TestClient) -> None:
    _bootstrap(client)
    body = b'{"pet_id": "pet-1", "schedules": [{"id": "s-1", "pet_id": "pet-1", "time_of_day": 1e400}]}'
    resp = client.post("/sync", content=body, headers={**_headers(OWNER), "Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "bad_request"


def test_sync_tolerates_unknown_access_level(client: TestClient) -> None:
    _bootstrap(client)
    pet = {**make_pet(owner_id=OWNER).to_json(), "access_level": "superuser", "name": "Miso"}
    resp = client.post("/sync", json={"pet_id": "pet-1", "pets": [pet]}, headers=_headers(OWNER))
    assert resp.status_code == 200
    [returned] = resp.json()["pets"]
    assert returned["name"] == "Miso"
    assert returned["access_level"] == "owner"


def test_redeem_snapshot_respects_tier(client: TestClient) -> None:
    _bootstrap(client)
    resp = client.post("/share/generate", json={"pet_id": "pet-1", "tier": "guest"}, headers=_headers(OWNER))
    code = resp.json()["code"]
    assert resp.json()["tier"] == "guest"

    redeemed = client.post("/share/redeem", json={"code": code}, headers=_headers(SITTER, "Sam"))
    assert redeemed.status_code == 200
    body = redeemed.json()
    assert body["tier"] == "guest"
    assert body["pet"]["access_level"] == "guest"
    assert body["insulin_logs"] == []
    assert body["vet_infos"] == []

    unknown = client.post("/share/redeem", json={"code": "QQQQQQ"}, headers=_headers(SITTER))
    assert unknown.status_code == 404


def test_generate_rejects_owner_tier_and_guests(client: TestClient) -> None:
    _bootstrap(client)
    bad_tier = client.post("/share/generate", json={"pet_id": "pet-1", "tier": "owner"}, headers=_headers(OWNER))
    assert bad_tier.status_code == 400
    _share(client, "guest", SITTER)
    denied = client.post("/share/generate", json={"pet_id": "pet-1", "tier": "guest"}, headers=_headers(SITTER))
    assert denied.status_code == 403


def test_codes_users_and_revocation(client: TestClient) -> None:
    _bootstrap(client)
    code = _share(client, "full", HELPER)

    codes = client.get("/share/pet/pet-1/codes", headers=_headers(OWNER)).json()["codes"]
    assert [item["code"] for item in codes] == [code]

    delegated = client.get("/share/pet/pet-1/users", headers=_headers(HELPER))
    assert delegated.status_code == 200
    assert delegated.json()["users"][0]["caller_id"] == HELPER

    revoke = client.post("/share/revoke", json={"pet_id": "pet-1", "caller_id": HELPER}, headers=_headers(OWNER))
    assert revoke.json() == {"revoked": True}
    again = client.post("/share/revoke", json={"pet_id": "pet-1", "caller_id": "ghost"}, headers=_headers(OWNER))
    assert again.status_code == 404

    blocked = client.post("/sync", json={"pet_id": "pet-1"}, headers=_headers(HELPER))
    assert blocked.status_code == 403
    users = client.get("/share/pet/pet-1/users", headers=_headers(OWNER)).json()["users"]
    assert users[0]["revoked"] is True


def test_deactivate_and_leave(client: TestClient) -> None:
    _bootstrap(client)
    code = _share(client, "guest", SITTER)

    assert client.delete(f"/share/{code}", headers=_headers(SITTER)).status_code == 403
    assert client.delete(f"/share/{code}", headers=_headers(OWNER)).json() == {"deactivated": True}
    assert client.delete(f"/share/{code}", headers=_headers(OWNER)).status_code == 404

    still_in = client.post("/sync", json={"pet_id": "pet-1"}, headers=_headers(SITTER))
    assert still_in.status_code == 200

    assert client.post("/share/leave", json={"pet_id": "pet-1"}, headers=_headers(SITTER)).json() == {"left": True}
    assert client.post("/share/leave", json={"pet_id": "pet-1"}, headers=_headers(SITTER)).status_code == 404


def test_pet_create_and_delete(client: TestClient) -> None:
    created = client.post("/pets", json={"pet": make_pet().to_json()}, headers=_headers(OWNER, "Olive"))
    assert created.status_code == 201
    assert created.json()["pet"]["owner_name"] == "Olive"

    _share(client, "full", HELPER)
    assert client.post("/pets/delete", json={"pet_id": "pet-1"}, headers=_headers(HELPER)).status_code == 403
    deleted = client.post("/pets/delete", json={"pet_id": "pet-1"}, headers=_headers(OWNER))
    assert deleted.json() == {"pet_id": "pet-1", "deleted": 1}

    assert client.post("/pets/delete", json={}, headers=_headers(OWNER)).status_code == 400
