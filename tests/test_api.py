"""End-to-end tests through the HTTP surface."""
from fastapi.testclient import TestClient

from helpers import signed
from ledger.store import EntryKind
from main import create_app
from providers.workflow import DispatchError, DispatchTimeout


def start_script(client, headers, **overrides):
    body = {"topic": "History of coffee", "model": "gemini-2.5-flash-lite", "duration": "1m", **overrides}
    return client.post("/api/scripts/generate", json=body, headers=headers)


class TestLedgerRoutes:
    def test_health(self, client):
        assert client.get("/api/health").json() == {"ok": True}

    def test_balance_requires_user(self, client):
        response = client.get("/api/credits/balance")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_balance_of_new_account(self, client, user_headers):
        response = client.get("/api/credits/balance", headers=user_headers)
        assert response.status_code == 200
        assert response.json() == {"balance": 25, "totalPurchased": 25, "totalUsed": 0}

    def test_history_paginates(self, client, user_headers, meter):
        for n in range(3):
            meter.credit("user-1", n + 1, EntryKind.BONUS, f"gift {n}")
        first = client.get("/api/credits/history?page=1&limit=2", headers=user_headers).json()
        assert [e["amount"] for e in first["entries"]] == [3, 2]
        assert first["pagination"] == {"page": 1, "limit": 2, "hasMore": True}
        assert "balanceAfter" in first["entries"][0]

        second = client.get("/api/credits/history?page=2&limit=2", headers=user_headers).json()
        assert [e["amount"] for e in second["entries"]] == [1, 25]
        assert second["pagination"]["hasMore"] is False


class TestScriptGeneration:
    def test_generate_dispatches_and_creates_script(self, client, user_headers, dispatcher):
        response = start_script(client, user_headers)
        assert response.status_code == 200
        data = response.json()
        assert (data["cost"], data["balance"], data["status"]) == (21, 4, "dispatched")
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"

        payload = dispatcher.last_payload
        assert payload["topic"] == "History of coffee"
        assert payload["callbackUrl"] == "http://app.test/api/scripts/callback"

        detail = client.get(f"/api/scripts/{data['ownerId']}", headers=user_headers).json()
        assert detail["status"] == "processing"
        assert detail["audioFiles"] == [] and detail["media"] == []

    def test_insufficient_credits_body(self, client, user_headers, dispatcher):
        response = start_script(client, user_headers, model="gemini-2.5-pro", duration="10m")
        assert response.status_code == 402
        error = response.json()["error"]
        assert (error["code"], error["required"], error["available"]) == ("insufficient_credits", 60, 25)
        assert dispatcher.calls == []

    def test_rate_limited_response(self, client):
        headers = {"X-User-Id": "rich"}
        client.app.state.services.meter.credit("rich", 500, EntryKind.BONUS, "seed")
        for _ in range(5):
            assert start_script(client, headers).status_code == 200
        response = start_script(client, headers)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.json()["error"]["retry_after"] == 60

    def test_dispatch_failure_refunds_and_fails_script(self, client, user_headers, dispatcher, scripts):
        dispatcher.error = DispatchError("boom")
        response = start_script(client, user_headers)
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "dispatch_failed"
        assert client.get("/api/credits/balance", headers=user_headers).json()["balance"] == 25
        script_id = dispatcher.last_payload["ownerId"]
        assert client.get(f"/api/scripts/{script_id}", headers=user_headers).json()["status"] == "failed"

    def test_timeout_answers_202(self, client, user_headers, dispatcher):
        dispatcher.error = DispatchTimeout("slow")
        response = start_script(client, user_headers)
        assert response.status_code == 202
        assert response.json()["status"] == "pending"

    def test_invalid_request_is_400(self, client, user_headers):
        response = client.post("/api/scripts/generate", json={"topic": ""}, headers=user_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestSectionAudio:
    def test_generate_and_delete_section_audio(self, client, user_headers, scripts, dispatcher):
        script = scripts.create("user-1", "Tea")
        body = {
            "voiceId": "nova",
            "sections": [
                {"sectionIndex": 0, "timestamp": "0:00-0:15", "text": "Intro"},
                {"sectionIndex": 1, "timestamp": "0:15-0:30", "narasiText": "Body"},
            ],
        }
        response = client.post(f"/api/scripts/{script.id}/generate-section-audio", json=body, headers=user_headers)
        assert response.status_code == 200
        assert response.json()["cost"] == 6
        dispatched = dispatcher.last_payload
        assert dispatched["voiceId"] == "nova"
        assert [s["text"] for s in dispatched["sections"]] == ["Intro", "Body"]

        callback, headers = signed({
            "ownerId": script.id,
            "status": "completed",
            "dispatchId": dispatched["dispatchId"],
            "audioFiles": [
                {"timestamp": "0:00-0:15", "sectionIndex": 0, "audioUrl": "https://a/0.mp3"},
                {"timestamp": "0:15-0:30", "sectionIndex": 1, "audioUrl": "https://a/1.mp3"},
            ],
        })
        assert client.post("/api/audio/callback", content=callback, headers=headers).json()["total"] == 2

        response = client.post(
            f"/api/scripts/{script.id}/delete-section-audio",
            json={"timestamp": "0:00-0:15"},
            headers=user_headers,
        )
        assert response.json() == {"success": True, "timestamp": "0:00-0:15", "removed": 1}
        files = client.get(f"/api/scripts/{script.id}", headers=user_headers).json()["audioFiles"]
        assert [f["timestamp"] for f in files] == ["0:15-0:30"]

    def test_other_users_script_is_not_found(self, client, scripts):
        script = scripts.create("someone-else", "Tea")
        response = client.get(f"/api/scripts/{script.id}", headers={"X-User-Id": "user-1"})
        assert response.status_code == 404


class TestMediaSearch:
    def test_count_over_cap_rejected(self, client, user_headers, scripts, dispatcher):
        script = scripts.create("user-1", "Tea")
        body = {"scriptId": script.id, "keywords": "tea", "count": 51}
        response = client.post("/api/videos/search", json=body, headers=user_headers)
        assert response.status_code == 400
        assert dispatcher.calls == []

    def test_image_search_then_callback(self, client, user_headers, scripts, dispatcher):
        script = scripts.create("user-1", "Tea")
        body = {"scriptId": script.id, "keywords": "tea", "count": 6}
        response = client.post("/api/images/search", json=body, headers=user_headers)
        assert response.json()["cost"] == 2

        callback, headers = signed({
            "scriptId": script.id,
            "status": "completed",
            "images": [{"id": 11, "url": "https://img/11.jpg"}, {"id": 12, "url": "https://img/12.jpg"}],
        })
        result = client.post("/api/images/callback", content=callback, headers=headers)
        assert result.status_code == 200
        assert result.json()["ownerId"] == script.id
        media = client.get(f"/api/scripts/{script.id}", headers=user_headers).json()["media"]
        assert [m["externalId"] for m in media] == ["11", "12"]


class TestCallbackRoutes:
    def test_bad_signature_is_403(self, client):
        body, headers = signed({"ownerId": "x", "status": "completed"}, secret="wrong")
        response = client.post("/api/scripts/callback", content=body, headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "invalid_signature"

    def test_malformed_is_400(self, client):
        body, headers = signed({"status": "completed"})
        assert client.post("/api/videos/callback", content=body, headers=headers).status_code == 400

    def test_unknown_owner_is_404(self, client):
        body, headers = signed({"ownerId": "missing", "status": "completed", "script": "x"})
        assert client.post("/api/scripts/callback", content=body, headers=headers).status_code == 404

    def test_script_callback_completes_script(self, client, user_headers, scripts):
        script = scripts.create("user-1", "Tea", status="processing")
        body, headers = signed({"ownerId": script.id, "status": "completed", "script": "Steep it."})
        assert client.post("/api/scripts/callback", content=body, headers=headers).status_code == 200
        detail = client.get(f"/api/scripts/{script.id}", headers=user_headers).json()
        assert (detail["status"], detail["script"]) == ("completed", "Steep it.")


class TestMediaDelete:
    def seed_images(self, client, script_id):
        callback, headers = signed({
            "scriptId": script_id,
            "status": "completed",
            "images": [{"id": 11, "url": "https://img/11.jpg"}, {"id": 12, "url": "https://img/12.jpg"}],
        })
        client.post("/api/images/callback", content=callback, headers=headers)

    def test_delete_one_item(self, client, user_headers, scripts):
        script = scripts.create("user-1", "Tea")
        self.seed_images(client, script.id)
        response = client.post("/api/media/delete", json={"scriptId": script.id, "mediaId": 11}, headers=user_headers)
        assert response.status_code == 200
        assert response.json()["total"] == 1
        media = client.get(f"/api/scripts/{script.id}", headers=user_headers).json()["media"]
        assert [m["externalId"] for m in media] == ["12"]

    def test_missing_item_is_404(self, client, user_headers, scripts):
        script = scripts.create("user-1", "Tea")
        self.seed_images(client, script.id)
        response = client.post("/api/media/delete", json={"scriptId": script.id, "mediaId": "99"}, headers=user_headers)
        assert response.status_code == 404
        assert len(scripts.get(script.id).media) == 2

    def test_other_users_script_is_404(self, client, scripts):
        script = scripts.create("someone-else", "Tea")
        self.seed_images(client, script.id)
        response = client.post(
            "/api/media/delete",
            json={"scriptId": script.id, "mediaId": "11"},
            headers={"X-User-Id": "user-1"},
        )
        assert response.status_code == 404
        assert len(scripts.get(script.id).media) == 2


class TestErrorEdges:
    def test_non_ascii_signature_is_403(self, client):
        body, headers = signed({"ownerId": "x", "status": "completed"})
        headers["X-Webhook-Signature"] = "é".encode("latin-1") * 64
        response = client.post("/api/audio/callback", content=body, headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "invalid_signature"

    def test_non_finite_duration_is_400(self, client, user_headers, dispatcher):
        for raw in ("NaN", "Infinity"):
            body = '{"topic": "Tea", "duration": %s}' % raw
            response = client.post(
                "/api/scripts/generate",
                content=body,
                headers={**user_headers, "Content-Type": "application/json"},
            )
            assert response.status_code == 400
            assert response.json()["error"]["code"] == "validation_error"
        assert dispatcher.calls == []

    def test_gate_errors_carry_rate_limit_headers(self, client, user_headers, dispatcher):
        response = start_script(client, user_headers, model="gemini-2.5-pro", duration="10m")
        assert response.status_code == 402
        assert response.headers["X-RateLimit-Remaining"] == "4"

        dispatcher.error = DispatchError("boom")
        response = start_script(client, user_headers)
        assert response.status_code == 502
        assert response.headers["X-RateLimit-Remaining"] == "3"

    def test_unexpected_error_uses_uniform_body(self, settings, dispatcher, clock, user_headers, monkeypatch):
        app = create_app(settings, dispatcher=dispatcher, clock=clock)

        def explode(account_id):
            raise RuntimeError("database on fire")

        monkeypatch.setattr(app.state.services.meter, "balance", explode)
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/api/credits/balance", headers=user_headers)
        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": {"code": "internal_error", "message": "Something went wrong. Please try again later"},
        }
