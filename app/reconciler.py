"""
Webhook Reconciler: applies provider callbacks to the Message Store.

Callbacks arrive at least once and in any order. Each inbound message and
each status event is handled on its own so that one bad element never
blocks the rest of the callback, and nothing here raises past process()
once the signature has been verified.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from pydantic import ValidationError

from app.exceptions import DuplicateProviderMessageError, WebhookAuthError
from app.logging_utils import redact
from app.metrics import record_status_transition
from app.schemas import InboundMessageEvent, StatusEvent, WebhookChange, WebhookPayload
from app.status import MessageStatus, can_transition, sources_for
from app.storage import MessageStore
from app.utils import timestamp_from_epoch, utc_now_iso, verify_hmac_signature

logger = logging.getLogger(__name__)

WHATSAPP_OBJECT = "whatsapp_business_account"
TEMPLATE_STATUS_FIELD = "message_template_status_update"

AUDIO_PLACEHOLDER = "[Audio message]"
VIDEO_PLACEHOLDER = "[Video message]"


class ConversationResolver(Protocol):
    """Maps a provider address to a local conversation, if one is known."""

    def resolve_conversation(self, provider_address: str) -> Optional[str]:
        ...


class NullConversationResolver:
    def resolve_conversation(self, provider_address: str) -> Optional[str]:
        return None


@dataclass
class ReconcileSummary:
    messages_created: int = 0
    messages_duplicate: int = 0
    statuses_applied: int = 0
    statuses_ignored: int = 0
    statuses_unmatched: int = 0
    events_observed: int = 0
    errors: int = 0

    def as_log_fields(self) -> Dict[str, int]:
        return dict(self.__dict__)


def extract_content(message: Dict[str, Any]) -> str:
    """
    Extract displayable content from an inbound provider message.

    text: body; image/document: caption; audio: placeholder;
    video: caption or placeholder; anything else: the raw JSON.
    """
    kind = message.get("type")
    if kind == "text":
        return (message.get("text") or {}).get("body") or ""
    if kind in ("image", "document"):
        return (message.get(kind) or {}).get("caption") or ""
    if kind == "audio":
        return AUDIO_PLACEHOLDER
    if kind == "video":
        return (message.get("video") or {}).get("caption") or VIDEO_PLACEHOLDER
    return json.dumps(message, sort_keys=True)


class WebhookReconciler:
    """
    Args:
        store: Message Store receiving created and updated records
        webhook_secret: Shared HMAC secret; None or empty skips verification
        verify_token: Token expected during the subscription handshake
        resolver: Conversation resolution collaborator for inbound messages
        event_hook: Observer for template status updates and other fields
    """

    def __init__(
        self,
        store: MessageStore,
        webhook_secret: Optional[str],
        verify_token: str,
        resolver: Optional[ConversationResolver] = None,
        event_hook: Optional[Callable[[str, Dict[str, Any]], None]] = None,
    ):
        self.store = store
        self.webhook_secret = webhook_secret
        self.verify_token = verify_token
        self.resolver = resolver or NullConversationResolver()
        self.event_hook = event_hook

    # --- Authentication ---

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        """
        Raises:
            WebhookAuthError: a secret is configured and the signature is missing or wrong
        """
        if not self.webhook_secret:
            logger.warning("WEBHOOK_SECRET not configured - webhook signature verification skipped")
            return
        if not signature:
            raise WebhookAuthError("missing signature")
        if not verify_hmac_signature(raw_body, signature, self.webhook_secret):
            raise WebhookAuthError("invalid signature")

    def verify_subscription(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> str:
        if mode == "subscribe" and token == self.verify_token:
            logger.info("Webhook verified successfully")
            return challenge or ""
        logger.warning("Webhook verification failed", extra={"mode": mode, "token": "***" if token else "missing"})
        raise WebhookAuthError("verification failed")

    # --- Processing ---

    def process(self, payload: Dict[str, Any]) -> ReconcileSummary:
        """Apply every change of an authenticated callback to the store."""
        summary = ReconcileSummary()
        try:
            envelope = WebhookPayload.model_validate(payload)
        except ValidationError as e:
            logger.error(f"Malformed webhook envelope: {e.error_count()} validation errors")
            summary.errors += 1
            return summary

        if envelope.object != WHATSAPP_OBJECT:
            logger.warning(f"Ignoring webhook for object {envelope.object!r}")
            summary.events_observed += 1
            return summary

        for entry in envelope.entry:
            for change in entry.changes:
                self._handle_change(change, summary)

        logger.info("Webhook reconciled", extra=summary.as_log_fields())
        return summary

    def _handle_change(self, change: WebhookChange, summary: ReconcileSummary) -> None:
        value = change.value
        handled = False

        if isinstance(value.get("messages"), list):
            handled = True
            for item in value["messages"]:
                self._guard(self._handle_inbound, item, value, summary=summary)

        if isinstance(value.get("statuses"), list):
            handled = True
            for item in value["statuses"]:
                self._guard(self._handle_status, item, summary=summary)

        if not handled:
            self._observe(change, summary)

    def _guard(self, handler: Callable, *args, summary: ReconcileSummary) -> None:
        try:
            handler(*args, summary)
        except ValidationError as e:
            logger.error(f"Skipping malformed webhook element: {e.error_count()} validation errors")
            summary.errors += 1
        except Exception:
            logger.exception("Error handling webhook element")
            summary.errors += 1

    def _handle_inbound(self, item: Dict[str, Any], value: Dict[str, Any], summary: ReconcileSummary) -> None:
        event = InboundMessageEvent.model_validate(item)
        logger.info(
            "Incoming message received",
            extra=redact({
                "provider_message_id": event.id,
                "message_type": event.type,
                "phone_number": event.from_address,
            }),
        )

        if self.store.find_by_provider_id(event.id) is not None:
            logger.info(f"Duplicate inbound message ignored: {event.id}")
            summary.messages_duplicate += 1
            return

        timestamp = timestamp_from_epoch(event.timestamp) if event.timestamp else utc_now_iso()
        metadata = value.get("metadata") or {}
        conversation_id = (
            self.resolver.resolve_conversation(event.from_address) if event.from_address else None
        )

        try:
            created = self.store.create(
                conversation_id=conversation_id,
                sender_id=event.from_address,
                recipient_id=metadata.get("phone_number_id"),
                recipient_address=event.from_address,
                content=extract_content(item),
                message_type=event.type,
                status=MessageStatus.DELIVERED,
                provider_message_id=event.id,
                timestamp=timestamp,
            )
        except DuplicateProviderMessageError:
            # Lost a race with a concurrent delivery of the same callback
            logger.info(f"Duplicate inbound message ignored: {event.id}")
            summary.messages_duplicate += 1
            return

        record_status_transition("webhook", MessageStatus.DELIVERED.value)
        summary.messages_created += 1
        logger.info(f"Incoming message stored: id={created.id}")

    def _handle_status(self, item: Dict[str, Any], summary: ReconcileSummary) -> None:
        event = StatusEvent.model_validate(item)
        target = MessageStatus.parse(event.status)
        if target is None or target == MessageStatus.PENDING:
            logger.info(f"Ignoring unsupported provider status {event.status!r} for {event.id}")
            summary.statuses_ignored += 1
            return

        message = self.store.find_by_provider_id(event.id)
        if message is None:
            logger.debug(f"Status update for unknown provider message {event.id} dropped")
            summary.statuses_unmatched += 1
            return

        if message.status == target:
            summary.statuses_ignored += 1
            return

        if not can_transition(message.status, target):
            logger.info(
                f"Stale status update ignored: id={message.id}, current={message.status.value}, "
                f"reported={target.value}"
            )
            summary.statuses_ignored += 1
            return

        updated = self.store.update_status(message.id, target, expected=sources_for(target))
        if updated is None:
            # Another writer moved the message first
            logger.info(f"Status update lost compare-and-set: id={message.id}, reported={target.value}")
            summary.statuses_ignored += 1
            return

        if target == MessageStatus.FAILED and event.errors:
            logger.warning(f"Provider reported failure for {message.id}: {event.errors}")
        record_status_transition("webhook", target.value)
        summary.statuses_applied += 1
        logger.info(f"Message status updated: id={message.id}, status={target.value}")

    def _observe(self, change: WebhookChange, summary: ReconcileSummary) -> None:
        if change.field == TEMPLATE_STATUS_FIELD:
            logger.info(
                "Template status update received",
                extra={
                    "template_id": change.value.get("message_template_id"),
                    "event": change.value.get("event"),
                },
            )
        else:
            logger.info(f"Unhandled webhook field {change.field!r} acknowledged")
        summary.events_observed += 1
        if self.event_hook is not None:
            try:
                self.event_hook(change.field or "", change.value)
            except Exception:
                logger.exception("Webhook event hook failed")
                summary.errors += 1
