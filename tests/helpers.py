"""Test doubles and builders shared by the test modules."""
from __future__ import annotations

import json

from core.config import Settings
from core.security import SIGNATURE_HEADER, sign_body
from providers.workflow import DispatchResponse

SECRET = "test-webhook-secret"
SERVER_KEY = "test-server-key"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDispatcher:
    """Records outbound jobs; set ``error`` to make the next calls fail."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.error: Exception | None = None

    def dispatch(self, url: str, payload: dict) -> DispatchResponse:
        self.calls.append((url, payload))
        if self.error is not None:
            raise self.error
        return DispatchResponse(status_code=200, body={"accepted": True})

    @property
    def last_payload(self) -> dict:
        return self.calls[-1][1]


def signed(payload: dict, secret: str = SECRET) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode("utf-8")
    return body, {"Content-Type": "application/json", SIGNATURE_HEADER: sign_body(body, secret)}


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        webhook_secret=SECRET,
        payment_server_key=SERVER_KEY,
        app_base_url="http://app.test",
        script_webhook_url="http://workflow.test/script",
        tts_webhook_url="http://workflow.test/tts",
        image_search_webhook_url="http://workflow.test/images",
        video_search_webhook_url="http://workflow.test/videos",
        starting_credits=25,
        refund_failed_callbacks=False,
    )
    values.update(overrides)
    return Settings(**values)
