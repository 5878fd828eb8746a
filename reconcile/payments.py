from __future__ import annotations

import logging
from typing import Any, Optional

from core.errors import ValidationError
from core.security import PaymentNotificationVerifier, PaymentVerification, WebhookAuthenticator
from ledger.credits import CreditMeter
from models.schemas import MonthlyGrantCallback, PaymentCallback
from reconcile.callbacks import parse_json_body, parse_payload

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"success", "settlement", "capture"})
GATEWAY_FIELDS = ("transaction_status", "signature_key", "merchant_id")


class PaymentReconciler:
    """Credits purchases reported by the payment workflow, once per order.

    Two senders share the endpoint. The gateway posts raw notifications signed
    over selected fields; those are only acknowledged. The workflow engine
    forwards the processed order, signed over the raw body, and only that one
    moves credits.
    """

    def __init__(
        self,
        authenticator: WebhookAuthenticator,
        gateway_verifier: PaymentNotificationVerifier,
        meter: CreditMeter,
    ) -> None:
        self.authenticator = authenticator
        self.gateway_verifier = gateway_verifier
        self.meter = meter

    def handle(self, body: bytes, signature: Optional[str], client_ip: Optional[str]) -> dict[str, Any]:
        raw = parse_json_body(body)
        if isinstance(raw, dict) and any(field in raw for field in GATEWAY_FIELDS):
            verification = self.gateway_verifier.verify(raw, client_ip)
            return {
                "success": True,
                "message": "Notification received",
                "test": verification is PaymentVerification.TEST,
            }

        self.authenticator.verify(body, signature)
        payload: PaymentCallback = parse_payload(PaymentCallback, body)

        if payload.status not in SUCCESS_STATUSES:
            raise ValidationError("Payment not successful", status=payload.status)
        if payload.type != "credits":
            raise ValidationError("Invalid type. Only credit purchases are supported.")
        if not payload.credits or payload.credits <= 0:
            raise ValidationError("Invalid credits amount")

        result = self.meter.purchase(
            payload.user_id,
            payload.credits,
            metadata={
                "order_id": payload.order_id,
                "transaction_id": payload.transaction_id,
                "package_size": payload.package_size,
            },
            reference=f"order:{payload.order_id}",
        )
        if result.duplicate:
            logger.info("order %s already processed", payload.order_id)
            return {"success": True, "message": "Order already processed", "duplicate": True}

        bonus = result.bonus.amount if result.bonus else 0
        return {
            "success": True,
            "type": "credits",
            "creditsGranted": result.credits_granted,
            "baseCredits": payload.credits,
            "bonusCredits": bonus,
            "isFirstPurchase": bool(result.purchase.metadata.get("is_first_purchase")),
            "balance": result.balance,
        }

    def handle_monthly_grant(self, body: bytes, signature: Optional[str]) -> dict[str, Any]:
        self.authenticator.verify(body, signature)
        payload: MonthlyGrantCallback = parse_payload(MonthlyGrantCallback, body)
        entry = self.meter.grant_monthly(payload.user_id, payload.plan)
        granted = entry.amount if entry else 0
        return {"success": True, "plan": payload.plan, "creditsGranted": granted}
