"""
Tests for the Webhook Reconciler.

Tests cover:
- Inbound message content extraction and duplicate suppression
- Status reconciliation with monotonic transitions
- Isolation of malformed elements
- Signature verification and the subscription handshake
"""

import json

import pytest

from app.exceptions import WebhookAuthError
from app.reconciler import (
    AUDIO_PLACEHOLDER,
    VIDEO_PLACEHOLDER,
    WebhookReconciler,
    extract_content,
)
from app.status import MessageStatus
from app.utils import compute_signature
from tests.fixtures.provider_events import (
    envelope,
    inbound_message,
    messages_change,
    status_change,
    status_event,
    template_change,
)


SECRET = "reconciler-secret"


class FixedResolver:
    def __init__(self, conversation_id):
        self.conversation_id = conversation_id
        self.addresses = []

    def resolve_conversation(self, provider_address):
        self.addresses.append(provider_address)
        return self.conversation_id


@pytest.fixture
def reconciler(store):
    return WebhookReconciler(store, webhook_secret=SECRET, verify_token="verify-me")


def sent_message(store, provider_message_id="wamid.OUT", status=MessageStatus.SENT):
    message = store.create(content="x", conversation_id="conv_1")
    store.mark_sent(message.id, provider_message_id)
    if status != MessageStatus.SENT:
        store.update_status(message.id, status)
    return store.find_by_id(message.id)


class TestExtractContent:

    @pytest.mark.parametrize("message,expected", [
        ({"type": "text", "text": {"body": "hello"}}, "hello"),
        ({"type": "image", "image": {"caption": "a photo"}}, "a photo"),
        ({"type": "image", "image": {"id": "media_1"}}, ""),
        ({"type": "document", "document": {"caption": "invoice.pdf"}}, "invoice.pdf"),
        ({"type": "audio", "audio": {"id": "media_2"}}, AUDIO_PLACEHOLDER),
        ({"type": "video", "video": {"caption": "clip"}}, "clip"),
        ({"type": "video", "video": {"id": "media_3"}}, VIDEO_PLACEHOLDER),
    ])
    def test_known_types(self, message, expected):
        assert extract_content(message) == expected

    def test_unknown_type_serialized(self):
        message = {"type": "location", "location": {"latitude": 12.9, "longitude": 77.6}}
        assert json.loads(extract_content(message)) == message


class TestInboundMessages:

    def test_inbound_message_created(self, reconciler, store):
        payload = envelope([messages_change([
            inbound_message("wamid.IN1", body={"body": "hi there"}),
        ])])

        summary = reconciler.process(payload)

        assert summary.messages_created == 1
        message = store.find_by_provider_id("wamid.IN1")
        assert message.status == MessageStatus.DELIVERED
        assert message.content == "hi there"
        assert message.sender_id == "919876543210"
        assert message.recipient_id == "123456"
        assert message.recipient_address == "919876543210"
        assert message.timestamp == "2024-01-15T10:00:00.000Z"

    def test_duplicate_inbound_is_not_duplicated(self, reconciler, store):
        payload = envelope([messages_change([
            inbound_message("wamid.DUP", body={"body": "once"}),
        ])])

        reconciler.process(payload)
        summary = reconciler.process(payload)

        assert summary.messages_created == 0
        assert summary.messages_duplicate == 1
        assert store.find_by_provider_id("wamid.DUP").content == "once"

    def test_resolver_assigns_conversation(self, store):
        resolver = FixedResolver("conv_resolved")
        reconciler = WebhookReconciler(store, webhook_secret=None, verify_token="t", resolver=resolver)

        reconciler.process(envelope([messages_change([inbound_message("wamid.R", body={"body": "x"})])]))

        assert resolver.addresses == ["919876543210"]
        assert store.find_by_provider_id("wamid.R").conversation_id == "conv_resolved"
        assert [m.id for m in store.find_by_conversation("conv_resolved")] == [
            store.find_by_provider_id("wamid.R").id
        ]

    def test_unresolved_conversation_is_empty(self, reconciler, store):
        reconciler.process(envelope([messages_change([inbound_message("wamid.N", body={"body": "x"})])]))

        assert store.find_by_provider_id("wamid.N").conversation_id is None


class TestStatusUpdates:

    def test_delivered_applied(self, reconciler, store):
        message = sent_message(store, "wamid.XYZ")

        summary = reconciler.process(envelope([status_change([status_event("wamid.XYZ", "delivered")])]))

        assert summary.statuses_applied == 1
        assert store.find_by_id(message.id).status == MessageStatus.DELIVERED

    def test_unknown_provider_id_leaves_store_unchanged(self, reconciler, store):
        message = sent_message(store, "wamid.KNOWN")

        summary = reconciler.process(envelope([status_change([status_event("wamid.UNKNOWN", "read")])]))

        assert summary.statuses_unmatched == 1
        assert store.find_by_id(message.id).status == MessageStatus.SENT
        assert store.find_by_provider_id("wamid.UNKNOWN") is None

    def test_stale_regression_ignored(self, reconciler, store):
        message = sent_message(store, "wamid.R1", status=MessageStatus.READ)

        summary = reconciler.process(envelope([status_change([status_event("wamid.R1", "delivered")])]))

        assert summary.statuses_ignored == 1
        assert store.find_by_id(message.id).status == MessageStatus.READ

    def test_read_before_delivered(self, reconciler, store):
        message = sent_message(store, "wamid.R2")

        reconciler.process(envelope([status_change([
            status_event("wamid.R2", "read", timestamp="1705312900"),
            status_event("wamid.R2", "delivered", timestamp="1705312800"),
        ])]))

        assert store.find_by_id(message.id).status == MessageStatus.READ

    def test_failed_from_sent(self, reconciler, store):
        message = sent_message(store, "wamid.F1")
        event = status_event("wamid.F1", "failed")
        event["errors"] = [{"code": 131026, "title": "Message undeliverable"}]

        summary = reconciler.process(envelope([status_change([event])]))

        assert summary.statuses_applied == 1
        assert store.find_by_id(message.id).status == MessageStatus.FAILED

    def test_repeated_status_is_noop(self, reconciler, store):
        message = sent_message(store, "wamid.S1", status=MessageStatus.DELIVERED)

        summary = reconciler.process(envelope([status_change([status_event("wamid.S1", "delivered")])]))

        assert summary.statuses_applied == 0
        assert store.find_by_id(message.id).status == MessageStatus.DELIVERED

    def test_unsupported_status_ignored(self, reconciler, store):
        message = sent_message(store, "wamid.U1")

        summary = reconciler.process(envelope([status_change([status_event("wamid.U1", "deleted")])]))

        assert summary.statuses_ignored == 1
        assert store.find_by_id(message.id).status == MessageStatus.SENT


class TestRobustness:

    def test_malformed_element_does_not_block_others(self, reconciler, store):
        message = sent_message(store, "wamid.OK")
        payload = envelope([
            status_change([
                {"status": "delivered"},
                status_event("wamid.OK", "delivered"),
            ]),
            messages_change([
                {"type": "text", "text": {"body": "no id"}},
                inbound_message("wamid.IN2", body={"body": "valid"}),
            ]),
        ])

        summary = reconciler.process(payload)

        assert summary.errors == 2
        assert summary.statuses_applied == 1
        assert summary.messages_created == 1
        assert store.find_by_id(message.id).status == MessageStatus.DELIVERED
        assert store.find_by_provider_id("wamid.IN2").content == "valid"

    def test_store_failure_is_contained(self, reconciler, store, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("store down")

        monkeypatch.setattr(store, "find_by_provider_id", broken)

        summary = reconciler.process(envelope([status_change([status_event("wamid.X", "read")])]))

        assert summary.errors == 1

    def test_inbound_store_failure_counted_per_call(self, reconciler, store, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("store down")

        monkeypatch.setattr(store, "create", broken)
        payload = envelope([messages_change([
            inbound_message("wamid.IN3", body={"body": "x"}),
            inbound_message("wamid.IN4", body={"body": "y"}),
        ])])

        first = reconciler.process(payload)
        second = reconciler.process(payload)

        assert first.errors == 2
        assert second.errors == 2
        assert first.messages_created == second.messages_created == 0

    def test_malformed_envelope(self, reconciler):
        summary = reconciler.process({"object": "whatsapp_business_account", "entry": "nope"})
        assert summary.errors == 1

    def test_other_object_ignored(self, reconciler, store):
        payload = envelope([messages_change([inbound_message("wamid.P", body={"body": "x"})])], obj="page")

        summary = reconciler.process(payload)

        assert summary.messages_created == 0
        assert store.find_by_provider_id("wamid.P") is None

    def test_template_update_reaches_event_hook(self, store):
        events = []
        reconciler = WebhookReconciler(
            store, webhook_secret=None, verify_token="t",
            event_hook=lambda field, value: events.append((field, value)),
        )

        summary = reconciler.process(envelope([template_change("tmpl_9", "REJECTED")]))

        assert summary.events_observed == 1
        assert events == [
            ("message_template_status_update", {"message_template_id": "tmpl_9", "event": "REJECTED"})
        ]

    def test_failing_event_hook_is_contained(self, store):
        def hook(field, value):
            raise RuntimeError("observer down")

        reconciler = WebhookReconciler(store, webhook_secret=None, verify_token="t", event_hook=hook)

        summary = reconciler.process(envelope([template_change()]))

        assert summary.events_observed == 1
        assert summary.errors == 1


class TestAuthentication:

    def test_valid_signature(self, reconciler):
        body = b'{"object":"whatsapp_business_account","entry":[]}'
        reconciler.verify_signature(body, compute_signature(body, SECRET))

    @pytest.mark.parametrize("signature", [None, "", "sha256=deadbeef"])
    def test_missing_or_invalid_signature(self, reconciler, signature):
        with pytest.raises(WebhookAuthError):
            reconciler.verify_signature(b"{}", signature)

    def test_signature_over_other_body_rejected(self, reconciler):
        signature = compute_signature(b'{"a":1}', SECRET)
        with pytest.raises(WebhookAuthError):
            reconciler.verify_signature(b'{"a":2}', signature)

    def test_no_secret_skips_verification(self, store, caplog):
        reconciler = WebhookReconciler(store, webhook_secret=None, verify_token="t")

        with caplog.at_level("WARNING", logger="app.reconciler"):
            reconciler.verify_signature(b"{}", None)

        assert "verification skipped" in caplog.text

    def test_subscription_handshake(self, reconciler):
        assert reconciler.verify_subscription("subscribe", "verify-me", "12345") == "12345"

    @pytest.mark.parametrize("mode,token", [
        ("subscribe", "wrong"),
        ("unsubscribe", "verify-me"),
        (None, None),
    ])
    def test_subscription_rejected(self, reconciler, mode, token):
        with pytest.raises(WebhookAuthError):
            reconciler.verify_subscription(mode, token, "12345")
