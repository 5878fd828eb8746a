from __future__ import annotations

import enum
import hashlib
import hmac
import logging
from typing import Iterable, Mapping, Optional

from core.errors import SignatureInvalid

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TEST_ORDER_PREFIX = "payment_notif_test_"


def sign_body(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _digest_equal(expected: str, received: str) -> bool:
    # compare_digest only takes ASCII str, so compare the raw bytes.
    return hmac.compare_digest(expected.encode("ascii"), received.encode("utf-8", "surrogateescape"))


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not secret:
        logger.error("webhook secret is not configured")
        return False
    if not signature:
        logger.warning("callback rejected: no signature header")
        return False
    expected = sign_body(body, secret)
    if not _digest_equal(expected, signature.strip().lower()):
        logger.warning("callback rejected: signature mismatch")
        return False
    return True


class WebhookAuthenticator:
    """Fails closed: every failure surfaces as the same SignatureInvalid."""

    def __init__(self, secret: Optional[str]) -> None:
        self.secret = secret

    def verify(self, body: bytes, signature: Optional[str]) -> None:
        if not verify_signature(body, signature, self.secret):
            raise SignatureInvalid()


class PaymentVerification(enum.Enum):
    VERIFIED = "verified"
    TEST = "test"


def payment_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}".encode("utf-8")
    return hashlib.sha512(raw).hexdigest()


class PaymentNotificationVerifier:
    """Gateway notifications are signed over specific fields, not the raw body.

    The IP allow-list is advisory. Gateway test notifications may arrive unsigned
    and are reported as ``TEST`` so the caller can acknowledge them without
    crediting anything.
    """

    def __init__(self, server_key: Optional[str], ip_allowlist: Iterable[str] = ()) -> None:
        self.server_key = server_key
        self.ip_allowlist = frozenset(ip_allowlist)

    def verify(self, payload: Mapping[str, object], client_ip: Optional[str]) -> PaymentVerification:
        if self.ip_allowlist and client_ip not in self.ip_allowlist:
            logger.warning("payment notification from unlisted address %s", client_ip)

        order_id = str(payload.get("order_id") or payload.get("orderId") or "")
        if self._signature_ok(payload, order_id):
            return PaymentVerification.VERIFIED
        if order_id.startswith(TEST_ORDER_PREFIX) or payload.get("test") is True:
            logger.info("unsigned test payment notification %s acknowledged", order_id)
            return PaymentVerification.TEST
        raise SignatureInvalid()

    def _signature_ok(self, payload: Mapping[str, object], order_id: str) -> bool:
        if not self.server_key:
            logger.error("payment server key is not configured")
            return False
        received = payload.get("signature_key")
        if not isinstance(received, str) or not order_id:
            return False
        expected = payment_signature(
            order_id,
            str(payload.get("status_code", "")),
            str(payload.get("gross_amount", "")),
            self.server_key,
        )
        return _digest_equal(expected, received.lower())
