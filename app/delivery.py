"""
Send Orchestrator: the public send and read-receipt operations.

send() creates the local record before the provider is contacted, so the
message is queryable whatever happens next, and always leaves it in an
explicit ``sent`` or ``failed`` state.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from app.exceptions import (
    DeliveryFailedError,
    InvalidTransitionError,
    MessageValidationError,
    ProviderError,
)
from app.logging_utils import redact
from app.metrics import record_status_transition
from app.provider import ProviderClient, StatusSnapshot
from app.schemas import MessageRecord
from app.status import MessageKind, MessageStatus, sources_for
from app.storage import MessageStore
from app.utils import normalize_address

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


@dataclass
class SendRequest:
    recipient_address: Optional[str]
    payload: Optional[str]
    recipient_id: Optional[str] = None
    kind: str = MessageKind.TEXT.value
    key_fingerprint: Optional[str] = None
    sender_id: Optional[str] = None
    conversation_id: Optional[str] = None

    def validate(self) -> None:
        missing = [
            name
            for name, value in (
                ("recipient_phone_number", self.recipient_address),
                ("encrypted_content", self.payload),
            )
            if not value
        ]
        if missing:
            raise MessageValidationError(f"Missing required fields: {', '.join(missing)}")

    def provider_address(self, default_country_code: str) -> str:
        """The recipient in the provider's addressing format."""
        try:
            return normalize_address(self.recipient_address, default_country_code)
        except ValueError as e:
            raise MessageValidationError(f"Invalid recipient_phone_number: {e}") from e


class SendOrchestrator:
    def __init__(self, store: MessageStore, provider: ProviderClient):
        self.store = store
        self.provider = provider

    async def send(self, request: SendRequest) -> MessageRecord:
        """
        Create a pending message, dispatch it once and record the outcome.

        Returns:
            The message in ``sent`` state with its provider id attached

        Raises:
            MessageValidationError: required fields are missing or the address has no digits (nothing stored)
            DeliveryFailedError: dispatch failed; the message is ``failed``
        """
        request.validate()
        recipient_address = request.provider_address(self.provider.default_country_code)

        message = self.store.create(
            conversation_id=request.conversation_id,
            sender_id=request.sender_id,
            recipient_id=request.recipient_id,
            recipient_address=recipient_address,
            content=request.payload,
            message_type=request.kind or MessageKind.TEXT.value,
            key_fingerprint=request.key_fingerprint,
            status=MessageStatus.PENDING,
        )
        logger.info(
            "Message created",
            extra=redact({
                "message_id": message.id,
                "message_type": message.message_type,
                "phone_number": recipient_address,
            }),
        )

        try:
            receipt = await self.provider.send(recipient_address, request.payload, message.message_type)
            sent = self.store.mark_sent(message.id, receipt.provider_message_id, receipt.recipient)
        except ProviderError as e:
            self._mark_failed(message.id)
            raise DeliveryFailedError(message.id, str(e)) from e
        except asyncio.CancelledError:
            # Cancelled mid-dispatch (client disconnect, shutdown): the outcome is unknown
            logger.warning(f"Dispatch of {message.id} cancelled")
            self._mark_failed(message.id)
            raise
        except Exception as e:
            # Never leave a message pending after a dispatch attempt
            logger.exception(f"Unexpected error dispatching {message.id}")
            self._mark_failed(message.id)
            raise DeliveryFailedError(message.id, "internal error") from e

        if sent is None:
            # A concurrent writer moved the message out of pending first
            current = self.store.find_by_id(message.id)
            logger.warning(
                f"Message {message.id} left pending before provider id could be attached: "
                f"status={current.status.value if current else None}"
            )
            return current

        record_status_transition("send", MessageStatus.SENT.value)
        logger.info(f"Message sent: id={sent.id}, provider_message_id={sent.provider_message_id}")
        return sent

    def _mark_failed(self, message_id: str) -> None:
        failed = self.store.update_status(
            message_id, MessageStatus.FAILED, expected=sources_for(MessageStatus.FAILED)
        )
        if failed is not None:
            record_status_transition("send", MessageStatus.FAILED.value)
        logger.error(f"Message failed: id={message_id}")

    async def mark_read(self, message_id: str) -> Optional[MessageRecord]:
        """
        Mark a message as read locally and acknowledge it to the provider.

        The provider acknowledgment is best effort: its failure is logged
        and never undoes or fails the local update.

        Returns:
            The updated message, or None if it does not exist

        Raises:
            InvalidTransitionError: the message is in a state that cannot become read
        """
        message = self.store.find_by_id(message_id)
        if message is None:
            return None

        if message.status != MessageStatus.READ:
            updated = self.store.update_status(
                message_id, MessageStatus.READ, expected=sources_for(MessageStatus.READ)
            )
            if updated is None:
                current = self.store.find_by_id(message_id) or message
                if current.status != MessageStatus.READ:
                    raise InvalidTransitionError(message_id, current.status.value, MessageStatus.READ.value)
                updated = current
            else:
                record_status_transition("read_receipt", MessageStatus.READ.value)
            message = updated

        if message.provider_message_id:
            try:
                await self.provider.mark_read(message.provider_message_id)
            except ProviderError as e:
                logger.warning(f"Provider read acknowledgment failed for {message_id}: {e}")

        return message

    def history(self, conversation_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[MessageRecord]:
        return self.store.find_by_conversation(conversation_id, limit)

    async def provider_status(self, provider_message_id: str) -> StatusSnapshot:
        return await self.provider.get_status(provider_message_id)
