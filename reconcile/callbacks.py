from __future__ import annotations

import enum
import json
import logging
from typing import Any, Optional, Type

import pydantic

from core.errors import ValidationError
from core.jobs import ScriptStore
from core.security import WebhookAuthenticator
from ledger.credits import CreditMeter
from models.schemas import (
    AudioCallback,
    CallbackBase,
    CallbackResponse,
    ImageCallback,
    ScriptCallback,
    VideoCallback,
)
from models.tables import Script
from reconcile.merge import (
    IMAGE_CALLBACK_CAP,
    VIDEO_CALLBACK_CAP,
    append_items,
    check_batch_size,
    upsert_by_key,
)

logger = logging.getLogger(__name__)


class CallbackKind(str, enum.Enum):
    SCRIPT = "script"
    AUDIO = "audio"
    IMAGES = "images"
    VIDEOS = "videos"


PAYLOADS: dict[CallbackKind, Type[CallbackBase]] = {
    CallbackKind.SCRIPT: ScriptCallback,
    CallbackKind.AUDIO: AudioCallback,
    CallbackKind.IMAGES: ImageCallback,
    CallbackKind.VIDEOS: VideoCallback,
}


def parse_json_body(body: bytes) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Request body is not valid JSON") from None


def parse_payload(model: Type[pydantic.BaseModel], body: bytes) -> Any:
    raw = parse_json_body(body)
    if not isinstance(raw, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return model.model_validate(raw)
    except pydantic.ValidationError as exc:
        fields = [".".join(str(part) for part in err["loc"]) for err in exc.errors()]
        raise ValidationError("Malformed callback payload", fields=fields[:10]) from None


class CallbackReconciler:
    """Merges worker results into their owning script.

    Order of checks: signature, payload shape, owner lookup, merge. Nothing is
    written unless all of them pass. Failed jobs only record the error; the
    debit stands unless ``refund_failed`` is switched on.
    """

    def __init__(
        self,
        authenticator: WebhookAuthenticator,
        scripts: ScriptStore,
        meter: Optional[CreditMeter] = None,
        refund_failed: bool = False,
    ) -> None:
        self.authenticator = authenticator
        self.scripts = scripts
        self.meter = meter
        self.refund_failed = refund_failed

    def handle(self, kind: CallbackKind, body: bytes, signature: Optional[str]) -> CallbackResponse:
        kind = CallbackKind(kind)
        self.authenticator.verify(body, signature)
        payload = parse_payload(PAYLOADS[kind], body)

        if payload.status == "failed":
            return self._record_failure(kind, payload)
        if kind is CallbackKind.SCRIPT:
            return self._apply_script(payload)
        if kind is CallbackKind.AUDIO:
            return self._apply_audio(payload)
        cap = IMAGE_CALLBACK_CAP if kind is CallbackKind.IMAGES else VIDEO_CALLBACK_CAP
        return self._apply_media(kind, payload, cap)

    def _apply_script(self, payload: ScriptCallback) -> CallbackResponse:
        def _merge(script: Script) -> None:
            if payload.script is not None:
                script.script_text = payload.script
            script.status = "completed"
            script.error = None
            _mark_applied(script, payload.dispatch_id)

        self.scripts.mutate(payload.owner_id, _merge)
        logger.info("script %s completed", payload.owner_id)
        return CallbackResponse(success=True, owner_id=payload.owner_id, message="Script updated")

    def _apply_audio(self, payload: AudioCallback) -> CallbackResponse:
        incoming = [segment.stored() for segment in payload.items]

        def _merge(script: Script) -> int:
            script.audio_files = upsert_by_key(script.audio_files or [], incoming, key="timestamp", order="sectionIndex")
            _mark_applied(script, payload.dispatch_id)
            return len(script.audio_files)

        _, total = self.scripts.mutate(payload.owner_id, _merge)
        logger.info("merged %s audio sections into %s (total %s)", len(incoming), payload.owner_id, total)
        return CallbackResponse(
            success=True,
            owner_id=payload.owner_id,
            message=f"Merged {len(incoming)} audio sections",
            total=total,
        )

    def _apply_media(self, kind: CallbackKind, payload: Any, cap: int) -> CallbackResponse:
        item_kind = "image" if kind is CallbackKind.IMAGES else "video"
        incoming = [item.stored(item_kind) for item in payload.items]
        check_batch_size(incoming, cap)

        def _merge(script: Script) -> tuple[int, bool]:
            if payload.dispatch_id and payload.dispatch_id in (script.applied_dispatches or []):
                return len(script.media or []), True
            script.media = append_items(script.media or [], incoming)
            _mark_applied(script, payload.dispatch_id)
            return len(script.media), False

        _, (total, duplicate) = self.scripts.mutate(payload.owner_id, _merge)
        if duplicate:
            logger.info("%s callback %s for %s already applied", kind.value, payload.dispatch_id, payload.owner_id)
            message = "Already applied"
        else:
            logger.info("added %s %ss to %s (total %s)", len(incoming), item_kind, payload.owner_id, total)
            message = f"Added {len(incoming)} {kind.value} (total: {total})"
        return CallbackResponse(
            success=True,
            owner_id=payload.owner_id,
            message=message,
            total=total,
            duplicate=duplicate,
        )

    def _record_failure(self, kind: CallbackKind, payload: CallbackBase) -> CallbackResponse:
        error = payload.error or "Unknown error"

        def _merge(script: Script) -> None:
            script.error = f"{kind.value}: {error}"
            if kind is CallbackKind.SCRIPT:
                script.status = "failed"

        self.scripts.mutate(payload.owner_id, _merge)
        logger.warning("%s job for %s failed: %s", kind.value, payload.owner_id, error)

        refunded = 0
        if self.refund_failed and payload.dispatch_id:
            refunded = self._refund(payload.owner_id, payload.dispatch_id, kind)
        return CallbackResponse(success=False, owner_id=payload.owner_id, message=error, refunded=refunded)

    def _refund(self, owner_id: str, dispatch_id: str, kind: CallbackKind) -> int:
        if self.meter is None:
            return 0
        debit = self.meter.store.find_reference(f"dispatch:{dispatch_id}")
        if debit is None or debit.metadata.get("owner_id") != owner_id:
            logger.warning("no debit found for failed dispatch %s on %s", dispatch_id, owner_id)
            return 0
        entry = self.meter.refund(debit, f"{kind.value} job failed", reference=f"reversal:{dispatch_id}")
        return entry.amount


def _mark_applied(script: Script, dispatch_id: Optional[str]) -> None:
    if dispatch_id and dispatch_id not in (script.applied_dispatches or []):
        script.applied_dispatches = [*(script.applied_dispatches or []), dispatch_id]
