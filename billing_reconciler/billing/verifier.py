import json
import logging
from typing import Optional

import stripe

from .domain import ExternalEvent
from ..errors import BadSignature, MalformedPayload
from ..utils.timeutils import from_timestamp, utcnow

logger = logging.getLogger(__name__)


DEFAULT_TOLERANCE = 300


class EventVerifier:
    """
    Turns a raw webhook delivery into an ExternalEvent.

    The signature is checked over the raw body, before any JSON parsing.
    Without a webhook secret the verifier runs unverified: every event is
    still parsed, logged as unverified and flagged ``verified=False``.
    """

    def __init__(self, secret: Optional[str], tolerance: int = DEFAULT_TOLERANCE):
        self.secret = secret or None
        self.tolerance = tolerance

    @property
    def unverified_mode(self) -> bool:
        return self.secret is None

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> ExternalEvent:
        try:
            payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        except UnicodeDecodeError as exc:
            raise MalformedPayload("Webhook body is not valid UTF-8") from exc

        if self.secret is not None:
            if not signature_header:
                raise BadSignature("Missing Stripe-Signature header")
            try:
                stripe.WebhookSignature.verify_header(
                    payload, signature_header, self.secret, self.tolerance
                )
            except stripe.SignatureVerificationError as exc:
                raise BadSignature(str(exc)) from exc

        event = self._parse(payload)

        if self.unverified_mode:
            logger.warning(
                "Accepting unverified webhook, STRIPE_WEBHOOK_SECRET is not configured",
                extra={"event_id": event.event_id, "event_type": event.type},
            )
        return event

    def _parse(self, payload: str) -> ExternalEvent:
        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise MalformedPayload("Webhook body is not valid JSON") from exc

        if not isinstance(body, dict):
            raise MalformedPayload("Webhook body is not a JSON object")

        event_id = body.get("id")
        event_type = body.get("type")
        data = body.get("data")
        obj = data.get("object") if isinstance(data, dict) else None

        if not event_id or not isinstance(event_id, str):
            raise MalformedPayload("Webhook event has no id")
        if not event_type or not isinstance(event_type, str):
            raise MalformedPayload("Webhook event has no type")
        if not isinstance(obj, dict):
            raise MalformedPayload("Webhook event has no data.object")

        received_at = utcnow()
        return ExternalEvent(
            event_id=event_id,
            type=event_type,
            payload=obj,
            created=from_timestamp(body.get("created")) or received_at,
            received_at=received_at,
            verified=not self.unverified_mode,
        )
