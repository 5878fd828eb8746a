from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from core.config import Settings
from core.errors import AppError, RateLimited, UpstreamDispatchFailure
from core.rate_limit import FixedWindowLimiter, RateLimitResult
from ledger.credits import CreditMeter
from ledger.pricing import ActionKind
from providers.workflow import Dispatcher, DispatchTimeout

logger = logging.getLogger(__name__)

CALLBACK_PATHS = {
    ActionKind.SCRIPT_GENERATE: "/api/scripts/callback",
    ActionKind.TTS_GENERATE: "/api/audio/callback",
    ActionKind.IMAGE_SEARCH: "/api/images/callback",
    ActionKind.VIDEO_SEARCH: "/api/videos/callback",
}


@dataclass
class DispatchRequest:
    action: ActionKind
    account_id: str
    limiter_key: str
    owner_id: str
    params: Dict[str, Any]
    payload: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    # Runs after the debit commits and before the outbound call.
    on_debited: Optional[Callable[[], None]] = None
    # Runs after a synchronous dispatch failure has been refunded.
    on_failed: Optional[Callable[[Exception], None]] = None


@dataclass
class DispatchReceipt:
    action: ActionKind
    owner_id: str
    dispatch_id: str
    cost: int
    balance: int
    status: str
    rate_limit: RateLimitResult


class JobDispatchGate:
    """The only path that spends credits on external work.

    Rate limit, price, debit, dispatch. A dispatch that never reached the
    worker is refunded; once the worker has the job the debit is final.
    """

    def __init__(
        self,
        limiter: FixedWindowLimiter,
        meter: CreditMeter,
        dispatcher: Dispatcher,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limiter = limiter
        self.meter = meter
        self.dispatcher = dispatcher
        self.settings = settings
        self.clock = clock

    def dispatch(self, req: DispatchRequest) -> DispatchReceipt:
        action = ActionKind(req.action)
        limit = self.limiter.check(req.limiter_key, self.settings.rate_rule(action))
        if not limit.allowed:
            logger.info("rate limited %s on %s", req.limiter_key, action.value)
            raise RateLimited(retry_after=limit.retry_after(self.clock()), headers=limit.headers())

        dispatch_id = uuid.uuid4().hex
        try:
            cost = self.meter.cost(action, req.params)
            debit = self.meter.check_and_debit(
                req.account_id,
                cost,
                req.description or f"{action.value} for {req.owner_id}",
                metadata={
                    "action": action.value,
                    "owner_id": req.owner_id,
                    "script_id": req.owner_id,
                    "dispatch_id": dispatch_id,
                    **req.params,
                },
                reference=f"dispatch:{dispatch_id}",
            )
        except AppError as exc:
            exc.with_headers(limit.headers())
            raise

        body = {
            **req.payload,
            "ownerId": req.owner_id,
            "scriptId": req.owner_id,
            "dispatchId": dispatch_id,
            "callbackUrl": self.settings.callback_url(CALLBACK_PATHS[action]),
        }
        status = "dispatched"
        try:
            if req.on_debited is not None:
                req.on_debited()
            self.dispatcher.dispatch(self.settings.webhook_url(action), body)
        except DispatchTimeout as exc:
            # The worker may have accepted the job; the debit stands.
            logger.warning("dispatch %s for %s timed out: %s", dispatch_id, req.owner_id, exc)
            status = "pending"
        except Exception as exc:
            logger.error("dispatch %s for %s failed: %s", dispatch_id, req.owner_id, exc)
            self._compensate(debit, dispatch_id, exc)
            if req.on_failed is not None:
                req.on_failed(exc)
            raise UpstreamDispatchFailure().with_headers(limit.headers()) from exc

        logger.info("dispatched %s %s for %s at %s credits", action.value, dispatch_id, req.owner_id, cost)
        return DispatchReceipt(
            action=action,
            owner_id=req.owner_id,
            dispatch_id=dispatch_id,
            cost=cost,
            balance=debit.balance_after,
            status=status,
            rate_limit=limit,
        )

    def _compensate(self, debit, dispatch_id: str, exc: Exception) -> None:
        try:
            self.meter.refund(debit, f"dispatch failed ({type(exc).__name__})", reference=f"reversal:{dispatch_id}")
        except Exception:
            logger.exception("refund for dispatch %s failed; debit %s needs manual reversal", dispatch_id, debit.id)
