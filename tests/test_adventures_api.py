from __future__ import annotations

from fastapi.testclient import TestClient

from daggergm.config import settings
from daggergm.main import app
from daggergm.modules.adventures import router as adventures_router
from daggergm.modules.generation.errors import GenerationError
from tests.support.scripted_gateway import ScriptedGateway

ALICE = {"X-User-Token": "alice-token"}
BOB = {"X-User-Token": "bob-token"}
ADMIN = {"X-Admin-Token": "admin-secret"}


def _fund(client: TestClient, headers: dict, amount: int) -> str:
    settings.admin_api_token = "admin-secret"
    user_id = client.get("/api/v1/credits/balance", headers=headers).json()["user_id"]
    granted = client.post("/api/v1/credits/grants", json={"user_id": user_id, "amount": amount}, headers=ADMIN)
    assert granted.status_code == 201
    return user_id


def _create(client: TestClient, headers: dict, **config) -> str:
    resp = client.post("/api/v1/adventures", json={"primary_motif": "corruption", **config}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["adventure_id"]


def _scene_url(adventure_id: str, scene_id: str, action: str = "") -> str:
    base = f"/api/v1/adventures/{adventure_id}/scenes/{scene_id}"
    return f"{base}/{action}" if action else base


def test_adventure_flow_from_creation_to_ready() -> None:
    client = TestClient(app)
    _fund(client, ALICE, 1)

    created = client.post(
        "/api/v1/adventures",
        json={"primary_motif": "corruption", "frame": "order"},
        headers=ALICE,
    )
    assert created.status_code == 201
    assert created.json()["credits_remaining"] == 0
    adventure_id = created.json()["adventure_id"]

    detail = client.get(f"/api/v1/adventures/{adventure_id}", headers=ALICE)
    assert detail.status_code == 200
    body = detail.json()
    assert body["state"] == "scaffolded"
    assert body["frame"] == "order"
    assert "owner_id" not in body
    assert [scene["id"] for scene in body["movements"]] == ["movement-1", "movement-2", "movement-3"]

    regenerated = client.post(_scene_url(adventure_id, "movement-1", "regenerate-scaffold"), headers=ALICE)
    assert regenerated.status_code == 200
    assert regenerated.json()["remaining_regenerations"] == 9
    assert regenerated.json()["updated_scene"]["id"] == "movement-1"

    expanded = client.post(_scene_url(adventure_id, "movement-3", "expand"), headers=ALICE)
    assert expanded.status_code == 200
    assert expanded.json()["expansion"]["adversaries"]

    content = client.post(_scene_url(adventure_id, "movement-3", "regenerate-expansion"), headers=ALICE)
    assert content.status_code == 200
    assert content.json()["remaining_regenerations"] == 18

    refined = client.post(
        _scene_url(adventure_id, "movement-3", "refine"),
        json={"instruction": "more dread", "context": {"tone": "grim"}},
        headers=ALICE,
    )
    assert refined.status_code == 200
    assert refined.json()["changes"] == ["Applied instruction: more dread"]

    edited = client.patch(
        _scene_url(adventure_id, "movement-2"),
        json={"gm_notes": "Foreshadow the warden"},
        headers=ALICE,
    )
    assert edited.status_code == 200
    assert edited.json()["gm_notes"] == "Foreshadow the warden"

    early = client.post(f"/api/v1/adventures/{adventure_id}/ready", headers=ALICE)
    assert early.status_code == 409
    assert early.json()["detail"]["code"] == "NOT_ALL_SCENES_CONFIRMED"

    for scene_id in ("movement-1", "movement-2", "movement-3"):
        confirmed = client.post(_scene_url(adventure_id, scene_id, "confirm"), headers=ALICE)
        assert confirmed.status_code == 200
    assert confirmed.json()["all_confirmed"] is True
    assert confirmed.json()["confirmed_at"].endswith("+00:00") or confirmed.json()["confirmed_at"].endswith("Z")

    ready = client.post(f"/api/v1/adventures/{adventure_id}/ready", headers=ALICE)
    assert ready.status_code == 200
    assert ready.json() == {"adventure_id": adventure_id, "state": "ready"}

    counts = client.get(f"/api/v1/adventures/{adventure_id}/regenerations", headers=ALICE).json()
    assert counts["scaffold_used"] == 1
    assert counts["expansion_used"] == 3
    assert counts["expansion_remaining"] == 17

    listed = client.get("/api/v1/adventures", headers=ALICE).json()
    assert [(item["id"], item["confirmed_count"], item["scene_count"]) for item in listed] == [(adventure_id, 3, 3)]


def test_confirmed_scene_rejects_regeneration_until_unconfirmed() -> None:
    client = TestClient(app)
    _fund(client, ALICE, 1)
    adventure_id = _create(client, ALICE)

    assert client.post(_scene_url(adventure_id, "movement-1", "confirm"), headers=ALICE).status_code == 200
    locked = client.post(_scene_url(adventure_id, "movement-1", "expand"), headers=ALICE)
    assert locked.status_code == 409
    assert locked.json()["detail"]["code"] == "SCENE_LOCKED"

    unconfirmed = client.post(_scene_url(adventure_id, "movement-1", "unconfirm"), headers=ALICE)
    assert unconfirmed.status_code == 200
    assert unconfirmed.json()["confirmed"] is False
    assert client.post(_scene_url(adventure_id, "movement-1", "expand"), headers=ALICE).status_code == 200


def test_create_without_credits_returns_payment_required() -> None:
    client = TestClient(app)

    resp = client.post("/api/v1/adventures", json={"primary_motif": "corruption"}, headers=ALICE)

    assert resp.status_code == 402
    assert resp.json()["detail"]["code"] == "INSUFFICIENT_CREDITS"
    assert resp.json()["detail"]["details"] == {"required": 1, "available": 0}
    assert client.get("/api/v1/adventures", headers=ALICE).json() == []


def test_create_generation_failure_refunds_credit(monkeypatch) -> None:
    client = TestClient(app)
    _fund(client, ALICE, 1)
    failing = ScriptedGateway(fail_with=GenerationError("timeout", operation="generate_scaffold"))
    monkeypatch.setattr(adventures_router, "get_generation_gateway", lambda: failing)

    resp = client.post("/api/v1/adventures", json={"primary_motif": "corruption"}, headers=ALICE)

    assert resp.status_code == 502
    assert resp.json()["detail"]["code"] == "GENERATION_FAILED"
    assert client.get("/api/v1/credits/balance", headers=ALICE).json()["credits"] == 1
    kinds = [item["type"] for item in client.get("/api/v1/credits/transactions", headers=ALICE).json()]
    assert sorted(kinds) == ["consume", "purchase", "refund"]


def test_invalid_config_and_short_instruction_are_unprocessable() -> None:
    client = TestClient(app)
    _fund(client, ALICE, 1)

    bad_config = client.post(
        "/api/v1/adventures",
        json={"primary_motif": "corruption", "num_scenes": 2},
        headers=ALICE,
    )
    assert bad_config.status_code == 422
    assert bad_config.json()["detail"]["code"] == "INVALID_INPUT"

    adventure_id = _create(client, ALICE)
    short = client.post(_scene_url(adventure_id, "movement-1", "refine"), json={"instruction": "no"}, headers=ALICE)
    assert short.status_code == 422
    assert short.json()["detail"]["code"] == "INVALID_INPUT"


def test_scaffold_regeneration_limit_returns_429() -> None:
    client = TestClient(app)
    _fund(client, ALICE, 1)
    adventure_id = _create(client, ALICE)
    url = _scene_url(adventure_id, "movement-2", "regenerate-scaffold")

    for expected_remaining in range(9, -1, -1):
        resp = client.post(url, headers=ALICE)
        assert resp.status_code == 200
        assert resp.json()["remaining_regenerations"] == expected_remaining

    capped = client.post(url, headers=ALICE)
    assert capped.status_code == 429
    assert capped.json()["detail"]["code"] == "LIMIT_EXCEEDED"
    assert client.get(f"/api/v1/adventures/{adventure_id}/regenerations", headers=ALICE).json()["scaffold_used"] == 10


def test_other_users_cannot_touch_an_adventure() -> None:
    client = TestClient(app)
    _fund(client, ALICE, 1)
    adventure_id = _create(client, ALICE)

    assert client.get(f"/api/v1/adventures/{adventure_id}", headers=BOB).status_code == 403
    forbidden = client.post(_scene_url(adventure_id, "movement-1", "confirm"), headers=BOB)
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"]["code"] == "FORBIDDEN"
    assert client.get(f"/api/v1/adventures/{adventure_id}").status_code == 401
    assert client.get("/api/v1/adventures/does-not-exist", headers=ALICE).status_code == 404


def test_archive_hides_adventure_from_listing() -> None:
    client = TestClient(app)
    _fund(client, ALICE, 1)
    adventure_id = _create(client, ALICE)

    archived = client.post(f"/api/v1/adventures/{adventure_id}/archive", headers=ALICE)
    assert archived.status_code == 200
    assert archived.json()["state"] == "archived"

    assert client.get("/api/v1/adventures", headers=ALICE).json() == []
    with_archived = client.get("/api/v1/adventures", params={"include_archived": True}, headers=ALICE).json()
    assert [item["id"] for item in with_archived] == [adventure_id]
    assert client.post(_scene_url(adventure_id, "movement-1", "expand"), headers=ALICE).status_code == 404
