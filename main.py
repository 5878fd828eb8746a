from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from core.auth import Identity, identity_from_headers, require_user
from core.config import Settings, settings as default_settings
from core.database import init_db, make_engine, make_session_factory
from core.errors import AppError, InternalError, NotFound, ValidationError
from core.jobs import ScriptStore
from core.rate_limit import FixedWindowLimiter, InMemoryRateLimitBackend, rate_limit_key
from core.security import SIGNATURE_HEADER, PaymentNotificationVerifier, WebhookAuthenticator
from ledger.credits import CreditMeter, grant_starting_credits
from ledger.pricing import ActionKind, PricingTable
from ledger.store import BalanceStore
from models.schemas import (
    BalanceResponse,
    CallbackResponse,
    DeleteMediaRequest,
    DeleteSectionAudioRequest,
    DispatchResponse,
    GenerateScriptRequest,
    HistoryResponse,
    LedgerEntryOut,
    MediaSearchRequest,
    Pagination,
    ScriptDetailResponse,
    SectionAudioRequest,
)
from pipeline import DispatchReceipt, DispatchRequest, JobDispatchGate
from providers.workflow import Dispatcher, WorkflowClient
from reconcile.callbacks import CallbackKind, CallbackReconciler
from reconcile.merge import IMAGE_CALLBACK_CAP, VIDEO_CALLBACK_CAP, remove_by_key
from reconcile.payments import PaymentReconciler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    meter: CreditMeter
    scripts: ScriptStore
    gate: JobDispatchGate
    reconciler: CallbackReconciler
    payments: PaymentReconciler


def build_services(
    settings: Settings,
    dispatcher: Optional[Dispatcher] = None,
    clock: Callable[[], float] = time.time,
) -> tuple[Services, Callable[[], None]]:
    engine = make_engine(settings.database_url)
    session_factory = make_session_factory(engine)

    store = BalanceStore(session_factory, on_create=grant_starting_credits(settings.starting_credits))
    meter = CreditMeter(store, PricingTable.from_settings(settings), settings)
    scripts = ScriptStore(session_factory)
    limiter = FixedWindowLimiter(InMemoryRateLimitBackend(), clock=clock)
    authenticator = WebhookAuthenticator(settings.webhook_secret)
    gate = JobDispatchGate(
        limiter,
        meter,
        dispatcher or WorkflowClient(timeout=settings.dispatch_timeout_seconds),
        settings,
        clock=clock,
    )
    services = Services(
        settings=settings,
        meter=meter,
        scripts=scripts,
        gate=gate,
        reconciler=CallbackReconciler(authenticator, scripts, meter, settings.refund_failed_callbacks),
        payments=PaymentReconciler(
            authenticator,
            PaymentNotificationVerifier(settings.payment_server_key, settings.payment_ip_allowlist),
            meter,
        ),
    )
    return services, lambda: init_db(engine)


def create_app(
    settings: Optional[Settings] = None,
    dispatcher: Optional[Dispatcher] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services, setup_db = build_services(settings, dispatcher, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_db()
        yield

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-User-Id", SIGNATURE_HEADER],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    )

    register_error_handlers(app)
    register_routes(app)
    return app


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(part) for part in err["loc"]) for err in exc.errors()]
        error = ValidationError("Invalid request", fields=fields[:10])
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("%s %s failed", request.method, request.url.path)
        error = InternalError()
        return JSONResponse(status_code=error.status_code, content=error.to_dict())


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_identity(request: Request) -> Identity:
    host = request.client.host if request.client else None
    return identity_from_headers(request.headers, host)


def _dispatch_response(receipt: DispatchReceipt, response: Response) -> DispatchResponse:
    for name, value in receipt.rate_limit.headers().items():
        response.headers[name] = value
    if receipt.status == "pending":
        response.status_code = 202
    return DispatchResponse(
        owner_id=receipt.owner_id,
        dispatch_id=receipt.dispatch_id,
        cost=receipt.cost,
        balance=receipt.balance,
        status=receipt.status,
    )


async def _run_callback(fn: Callable, *args):
    try:
        return await run_in_threadpool(fn, *args)
    except AppError:
        raise
    except Exception as exc:
        logger.exception("callback processing failed")
        raise InternalError() from exc


def register_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    async def health() -> dict:
        return {"ok": True}

    # --- Ledger ------------------------------------------------------------

    @app.get("/api/credits/balance", response_model=BalanceResponse)
    def credit_balance(
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> BalanceResponse:
        account = services.meter.balance(require_user(identity))
        return BalanceResponse(
            balance=account.balance,
            total_purchased=account.total_purchased,
            total_used=account.total_used,
        )

    @app.get("/api/credits/history", response_model=HistoryResponse)
    def credit_history(
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=100),
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> HistoryResponse:
        user_id = require_user(identity)
        rows = services.meter.history(user_id, limit=limit + 1, offset=(page - 1) * limit)
        entries = [
            LedgerEntryOut(
                id=row.id,
                amount=row.amount,
                kind=row.kind.value,
                description=row.description,
                balance_after=row.balance_after,
                created_at=row.created_at,
            )
            for row in rows[:limit]
        ]
        return HistoryResponse(
            entries=entries,
            pagination=Pagination(page=page, limit=limit, has_more=len(rows) > limit),
        )

    # --- Billable actions ----------------------------------------------------

    @app.post("/api/scripts/generate", response_model=DispatchResponse)
    def generate_script(
        body: GenerateScriptRequest,
        response: Response,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> DispatchResponse:
        user_id = require_user(identity)
        script_id = str(uuid.uuid4())

        def _create_script() -> None:
            services.scripts.create(user_id, body.topic.strip(), body.model, status="processing", script_id=script_id)

        def _mark_failed(exc: Exception) -> None:
            if services.scripts.get(script_id) is not None:
                services.scripts.update(script_id, status="failed", error="Failed to start script generation")

        receipt = services.gate.dispatch(
            DispatchRequest(
                action=ActionKind.SCRIPT_GENERATE,
                account_id=user_id,
                limiter_key=rate_limit_key(user_id, identity.client_ip),
                owner_id=script_id,
                params={"model": body.model, "duration": body.duration},
                payload=body.model_dump(),
                description=f"Script generation: {body.topic.strip()[:80]}",
                on_debited=_create_script,
                on_failed=_mark_failed,
            )
        )
        return _dispatch_response(receipt, response)

    @app.post("/api/scripts/{script_id}/generate-section-audio", response_model=DispatchResponse)
    def generate_section_audio(
        script_id: str,
        body: SectionAudioRequest,
        response: Response,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> DispatchResponse:
        user_id = require_user(identity)
        services.scripts.get_owned(script_id, user_id)
        labels = ", ".join(section.timestamp for section in body.sections)
        receipt = services.gate.dispatch(
            DispatchRequest(
                action=ActionKind.TTS_GENERATE,
                account_id=user_id,
                limiter_key=rate_limit_key(user_id, identity.client_ip),
                owner_id=script_id,
                params={"sections": len(body.sections)},
                payload={
                    "voiceId": body.voice_id,
                    "sections": [section.model_dump(by_alias=True) for section in body.sections],
                },
                description=f"TTS for sections: {labels}"[:255],
            )
        )
        return _dispatch_response(receipt, response)

    @app.post("/api/scripts/{script_id}/delete-section-audio")
    def delete_section_audio(
        script_id: str,
        body: DeleteSectionAudioRequest,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> dict:
        user_id = require_user(identity)
        services.scripts.get_owned(script_id, user_id)

        def _remove(script) -> int:
            before = len(script.audio_files or [])
            script.audio_files = remove_by_key(script.audio_files or [], "timestamp", body.timestamp)
            return before - len(script.audio_files)

        _, removed = services.scripts.mutate(script_id, _remove)
        return {"success": True, "timestamp": body.timestamp, "removed": removed}

    @app.get("/api/scripts/{script_id}", response_model=ScriptDetailResponse)
    def get_script(
        script_id: str,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> ScriptDetailResponse:
        script = services.scripts.get_owned(script_id, require_user(identity))
        return ScriptDetailResponse(
            id=script.id,
            topic=script.topic,
            model=script.model,
            status=script.status,
            script=script.script_text,
            error=script.error,
            audio_files=script.audio_files,
            media=script.media,
            created_at=script.created_at,
            updated_at=script.updated_at,
        )

    def _media_search(
        action: ActionKind,
        cap: int,
        body: MediaSearchRequest,
        response: Response,
        identity: Identity,
        services: Services,
    ) -> DispatchResponse:
        user_id = require_user(identity)
        if body.count > cap:
            raise ValidationError(f"count must be at most {cap}")
        services.scripts.get_owned(body.script_id, user_id)
        noun = "images" if action is ActionKind.IMAGE_SEARCH else "videos"
        receipt = services.gate.dispatch(
            DispatchRequest(
                action=action,
                account_id=user_id,
                limiter_key=rate_limit_key(user_id, identity.client_ip),
                owner_id=body.script_id,
                params={"count": body.count},
                payload={
                    "keywords": body.keywords,
                    "count": body.count,
                    "orientation": body.orientation,
                    "source": body.source,
                },
                description=f"{noun.capitalize()} search: {body.keywords} ({body.count} {noun})"[:255],
            )
        )
        return _dispatch_response(receipt, response)

    @app.post("/api/images/search", response_model=DispatchResponse)
    def search_images(
        body: MediaSearchRequest,
        response: Response,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> DispatchResponse:
        return _media_search(ActionKind.IMAGE_SEARCH, IMAGE_CALLBACK_CAP, body, response, identity, services)

    @app.post("/api/videos/search", response_model=DispatchResponse)
    def search_videos(
        body: MediaSearchRequest,
        response: Response,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> DispatchResponse:
        return _media_search(ActionKind.VIDEO_SEARCH, VIDEO_CALLBACK_CAP, body, response, identity, services)

    @app.post("/api/media/delete")
    def delete_media(
        body: DeleteMediaRequest,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> dict:
        user_id = require_user(identity)
        services.scripts.get_owned(body.script_id, user_id)

        def _remove(script) -> int:
            media = script.media or []
            kept = remove_by_key(media, "externalId", body.media_id)
            if len(kept) == len(media):
                raise NotFound("Media not found")
            script.media = kept
            return len(kept)

        _, remaining = services.scripts.mutate(body.script_id, _remove)
        logger.info("deleted media %s from %s", body.media_id, body.script_id)
        return {"success": True, "message": "Media deleted successfully", "total": remaining}

    # --- Callbacks -----------------------------------------------------------

    def _callback_route(path: str, kind: CallbackKind) -> None:
        async def receive(request: Request, services: Services = Depends(get_services)) -> CallbackResponse:
            body = await request.body()
            signature = request.headers.get(SIGNATURE_HEADER)
            return await _run_callback(services.reconciler.handle, kind, body, signature)

        app.add_api_route(
            path,
            receive,
            methods=["POST"],
            response_model=CallbackResponse,
            name=f"{kind.value}_callback",
        )

    _callback_route("/api/scripts/callback", CallbackKind.SCRIPT)
    _callback_route("/api/audio/callback", CallbackKind.AUDIO)
    _callback_route("/api/images/callback", CallbackKind.IMAGES)
    _callback_route("/api/videos/callback", CallbackKind.VIDEOS)

    @app.post("/api/billing/callback")
    async def billing_callback(request: Request, services: Services = Depends(get_services)) -> dict:
        body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        return await _run_callback(services.payments.handle, body, signature, get_identity(request).client_ip)

    @app.post("/api/billing/monthly-grant")
    async def monthly_grant(request: Request, services: Services = Depends(get_services)) -> dict:
        body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        return await _run_callback(services.payments.handle_monthly_grant, body, signature)


app = create_app()
