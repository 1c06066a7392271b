import logging
from datetime import datetime, timedelta, timezone

import pytest

from chatrelay.models import Message
from chatrelay.services import conversation_service, message_service, notification_service
from chatrelay.services.message_service import SenderType


@pytest.fixture
def conversation(db, cloud_channel, make_event):
    conversation = conversation_service.resolve(db, cloud_channel, make_event(cloud_channel))
    db.commit()
    return conversation


@pytest.fixture
def web_conversation(db, web_channel, make_event):
    conversation = conversation_service.resolve(db, web_channel, make_event(web_channel))
    db.commit()
    return conversation


def _updates(notifications):
    return [payload for name, payload in notifications if name == notification_service.MESSAGE_UPDATED]


class TestRecordIncoming:
    def test_stores_contact_message(self, db, cloud_channel, conversation, make_event, notifications):
        message = message_service.record_incoming(db, conversation, make_event(cloud_channel))

        assert message.type == "incoming"
        assert message.sender_type == "contact"
        assert message.external_message_id == "wamid.A1"
        assert message.sender_contact_id == conversation.contact_channel.contact_id
        received = [p for name, p in notifications if name == notification_service.MESSAGE_RECEIVED]
        assert len(received) == 1
        assert received[0]["message_id"] == str(message.id)

    def test_duplicate_delivery_returns_existing_row(self, db, cloud_channel, conversation, make_event, notifications):
        first = message_service.record_incoming(db, conversation, make_event(cloud_channel))
        second = message_service.record_incoming(db, conversation, make_event(cloud_channel))

        assert first.id == second.id
        assert db.query(Message).count() == 1
        assert len([n for n, _ in notifications if n == notification_service.MESSAGE_RECEIVED]) == 1

    def test_message_without_external_id(self, db, cloud_channel, conversation, make_event):
        message = message_service.record_incoming(db, conversation, make_event(cloud_channel, external_message_id=None))

        assert message.external_message_id is None
        assert message.content == "Hello there"


class TestRecordEcho:
    def test_echo_attaches_to_pending_outgoing_message(self, db, cloud_channel, conversation, make_event, notifications):
        outgoing = message_service.create_outgoing(db, conversation, "X", SenderType.AI)
        db.commit()

        echo = make_event(cloud_channel, content="X", external_message_id="wamid.ECHO", is_echo_of_own_message=True)
        matched = message_service.record_echo(db, conversation, echo)

        assert matched.id == outgoing.id
        assert matched.external_message_id == "wamid.ECHO"
        assert db.query(Message).filter(Message.conversation_id == conversation.id).count() == 1
        assert len(_updates(notifications)) == 1

    def test_echo_prefers_most_recent_match(self, db, cloud_channel, conversation, make_event):
        older = message_service.create_outgoing(db, conversation, "Same text", SenderType.HUMAN)
        older.created_at = datetime.now(timezone.utc) - timedelta(seconds=60)
        newer = message_service.create_outgoing(db, conversation, "Same text", SenderType.HUMAN)
        db.commit()

        echo = make_event(cloud_channel, content="Same text", external_message_id="wamid.E2", is_echo_of_own_message=True)
        matched = message_service.record_echo(db, conversation, echo)

        assert matched.id == newer.id
        db.refresh(older)
        assert older.external_message_id is None

    def test_old_pending_message_is_not_matched(self, db, cloud_channel, conversation, make_event):
        stale = message_service.create_outgoing(db, conversation, "Hi", SenderType.AI)
        stale.created_at = datetime.now(timezone.utc) - timedelta(hours=2)
        db.commit()

        echo = make_event(cloud_channel, content="Hi", external_message_id="wamid.E3", is_echo_of_own_message=True)
        stored = message_service.record_echo(db, conversation, echo)

        assert stored.id != stale.id
        assert stored.message_metadata["from_echo"] is True

    def test_unmatched_echo_stored_as_human_outgoing(self, db, cloud_channel, conversation, make_event):
        echo = make_event(cloud_channel, content="Typed on phone", external_message_id="wamid.P1", is_echo_of_own_message=True)

        stored = message_service.record_echo(db, conversation, echo)

        assert stored.type == "outgoing"
        assert stored.sender_type == "human"
        assert stored.sent_at is not None
        assert stored.message_metadata["from_echo"] is True

    def test_repeated_echo_is_ignored(self, db, cloud_channel, conversation, make_event):
        echo = make_event(cloud_channel, content="Typed", external_message_id="wamid.P2", is_echo_of_own_message=True)

        first = message_service.record_echo(db, conversation, echo)
        second = message_service.record_echo(db, conversation, echo)

        assert first.id == second.id
        assert db.query(Message).count() == 1


class TestDispatchFields:
    def test_mark_sent_sets_external_id_and_clears_failure(self, db, conversation):
        message = message_service.create_outgoing(db, conversation, "Hi", SenderType.HUMAN)
        message_service.mark_failed(db, message, "boom")

        message_service.mark_sent(db, message, "wamid.S1")

        assert message.sent_at is not None
        assert message.external_message_id == "wamid.S1"
        assert message.failed_at is None
        assert message.error_message is None

    def test_mark_sent_without_id_keeps_existing_id(self, db, conversation):
        message = message_service.create_outgoing(db, conversation, "Hi", SenderType.HUMAN)
        message_service.mark_sent(db, message, "wamid.S2")

        message_service.mark_sent(db, message, None)

        assert message.external_message_id == "wamid.S2"

    def test_mark_failed_leaves_sent_at_empty(self, db, conversation):
        message = message_service.create_outgoing(db, conversation, "Hi", SenderType.HUMAN)

        message_service.mark_failed(db, message, "Provider rejected")

        assert message.failed_at is not None
        assert message.error_message == "Provider rejected"
        assert message.sent_at is None


class TestUpdateStatus:
    @pytest.fixture
    def sent_message(self, db, web_conversation):
        message = message_service.create_outgoing(db, web_conversation, "Hi", SenderType.AI)
        message_service.mark_sent(db, message, "true_15551234567@c.us_ABC")
        db.commit()
        return message

    def test_read_implies_delivered_and_sent(self, db, sent_message):
        message = message_service.update_status(db, "true_15551234567@c.us_ABC", 3)

        assert message.read_at is not None
        assert message.delivered_at is not None
        assert message.sent_at is not None

    def test_out_of_order_acks_never_move_backwards(self, db, sent_message):
        message_service.update_status(db, "true_15551234567@c.us_ABC", 3)
        db.refresh(sent_message)
        read_at, delivered_at = sent_message.read_at, sent_message.delivered_at

        message_service.update_status(db, "true_15551234567@c.us_ABC", 2)
        message_service.update_status(db, "true_15551234567@c.us_ABC", 1)
        db.refresh(sent_message)

        assert sent_message.read_at == read_at
        assert sent_message.delivered_at == delivered_at

    def test_notifies_only_on_change(self, db, sent_message, notifications):
        message_service.update_status(db, "true_15551234567@c.us_ABC", 2)
        message_service.update_status(db, "true_15551234567@c.us_ABC", 2)

        assert len(_updates(notifications)) == 1

    def test_unknown_external_id_is_logged(self, db, caplog):
        with caplog.at_level(logging.WARNING, logger="chatrelay.message_service"):
            result = message_service.update_status(db, "does-not-exist", 2)

        assert result is None
        assert "unknown external_message_id" in caplog.text

    def test_unmapped_ack_is_ignored(self, db, sent_message, notifications):
        message = message_service.update_status(db, "true_15551234567@c.us_ABC", 0)

        assert message.delivered_at is None
        assert _updates(notifications) == []

    def test_failure_ack_marks_undelivered_message_failed(self, db, sent_message):
        message = message_service.update_status(db, "true_15551234567@c.us_ABC", -1)

        assert message.failed_at is not None
        assert "ack -1" in message.error_message

    def test_failure_ack_after_delivery_is_ignored(self, db, sent_message):
        message_service.update_status(db, "true_15551234567@c.us_ABC", 2)

        message = message_service.update_status(db, "true_15551234567@c.us_ABC", -1)

        assert message.failed_at is None

    def test_cloud_api_status_strings(self, db, conversation):
        message = message_service.create_outgoing(db, conversation, "Hi", SenderType.AI)
        message_service.mark_sent(db, message, "wamid.CLOUD")

        updated = message_service.update_status(db, "wamid.CLOUD", "delivered", provider="whatsapp")

        assert updated.delivered_at is not None
        assert updated.read_at is None
