from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from chatrelay.config import settings
from chatrelay.database import get_db
from chatrelay.main import app
from chatrelay.models import ChatbotChannel, Conversation, Job, Message
from chatrelay.services import job_service, message_service, notification_service
from chatrelay.services.message_service import SenderType


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _cloud_text(body="Hi", message_id="wamid.IN1", phone_number_id="1029384756"):
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "metadata": {"phone_number_id": phone_number_id},
                            "contacts": [{"wa_id": "15551234567", "profile": {"name": "Jane"}}],
                            "messages": [
                                {"from": "15551234567", "id": message_id, "type": "text", "text": {"body": body}}
                            ],
                        },
                    }
                ],
            }
        ],
    }


class TestCloudVerification:
    @patch.object(settings, "whatsapp_verify_token", "verify-me")
    def test_echoes_challenge(self, client):
        response = client.get(
            "/webhook/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "8675309"},
        )

        assert response.status_code == 200
        assert response.text == "8675309"

    @patch.object(settings, "whatsapp_verify_token", "verify-me")
    def test_underscore_params(self, client):
        response = client.get(
            "/webhook/whatsapp",
            params={"hub_mode": "subscribe", "hub_verify_token": "verify-me", "hub_challenge": "42"},
        )

        assert response.text == "42"

    @patch.object(settings, "whatsapp_verify_token", "verify-me")
    def test_wrong_token_is_forbidden(self, client):
        response = client.get(
            "/webhook/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"},
        )

        assert response.status_code == 403


class TestCloudWebhook:
    def test_message_is_stored_and_ai_reply_queued(self, client, db, cloud_channel, notifications):
        response = client.post("/webhook/whatsapp", json=_cloud_text())

        assert response.status_code == 204
        message = db.query(Message).one()
        assert message.content == "Hi"
        job = db.query(Job).one()
        assert job.queue == job_service.AI_QUEUE
        assert job.payload == {"message_id": str(message.id)}
        names = [name for name, _ in notifications]
        assert notification_service.CONVERSATION_CREATED in names
        assert notification_service.MESSAGE_RECEIVED in names
        assert db.get(ChatbotChannel, cloud_channel.id).last_activity_at is not None

    def test_redelivery_is_ignored(self, client, db, cloud_channel):
        client.post("/webhook/whatsapp", json=_cloud_text())
        client.post("/webhook/whatsapp", json=_cloud_text())

        assert db.query(Message).count() == 1
        assert db.query(Job).count() == 1

    def test_human_mode_conversation_does_not_queue_ai(self, client, db, cloud_channel):
        cloud_channel.settings = {"default_mode": "human"}
        db.commit()

        client.post("/webhook/whatsapp", json=_cloud_text())

        assert db.query(Message).count() == 1
        assert db.query(Job).count() == 0

    def test_unknown_channel_still_acknowledged(self, client, db, cloud_channel):
        response = client.post("/webhook/whatsapp", json=_cloud_text(phone_number_id="000"))

        assert response.status_code == 202
        assert db.query(Message).count() == 0

    @patch("chatrelay.routers.webhook.alert_error")
    def test_unexpected_error_still_acknowledged(self, mock_alert, client, cloud_channel):
        with patch("chatrelay.services.webhook_service.process_adapted", side_effect=RuntimeError("db down")):
            response = client.post("/webhook/whatsapp", json=_cloud_text())

        assert response.status_code == 202
        mock_alert.assert_called_once()

    def test_array_body_still_acknowledged(self, client, db, cloud_channel):
        response = client.post("/webhook/whatsapp", json=[{"entry": []}])

        assert response.status_code == 202
        assert db.query(Message).count() == 0

    def test_invalid_json_still_acknowledged(self, client, db, cloud_channel):
        response = client.post(
            "/webhook/whatsapp", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 202

    def test_sender_without_digits_creates_nothing(self, client, db, cloud_channel):
        payload = _cloud_text()
        payload["entry"][0]["changes"][0]["value"]["messages"][0]["from"] = "unknown"

        response = client.post("/webhook/whatsapp", json=payload)

        assert response.status_code == 202
        assert db.query(Conversation).count() == 0
        assert db.query(Job).count() == 0

    def test_status_update(self, client, db, cloud_channel, make_event):
        from chatrelay.services import conversation_service

        conversation = conversation_service.resolve(db, cloud_channel, make_event(cloud_channel))
        outgoing = message_service.create_outgoing(db, conversation, "Hi", SenderType.AI)
        message_service.mark_sent(db, outgoing, "wamid.OUT")
        db.commit()
        payload = {
            "entry": [
                {
                    "changes": [
                        {
                            "field": "messages",
                            "value": {
                                "metadata": {"phone_number_id": "1029384756"},
                                "statuses": [{"id": "wamid.OUT", "status": "read"}],
                            },
                        }
                    ]
                }
            ]
        }

        response = client.post("/webhook/whatsapp", json=payload)

        assert response.status_code == 204
        db.refresh(outgoing)
        assert outgoing.read_at is not None
        assert outgoing.delivered_at is not None


class TestWhatsappWebWebhook:
    def test_missing_fields_rejected(self, client):
        response = client.post("/webhook/whatsapp_web", json={"event_type": "message_received"})

        assert response.status_code == 422

    def test_message_received(self, client, db, chatbot, web_channel):
        response = client.post(
            "/webhook/whatsapp_web",
            json={
                "dataType": "message",
                "sessionId": f"chatbot-{chatbot.id}",
                "data": {
                    "message": {
                        "id": {"_serialized": "false_15551234567@c.us_AAA"},
                        "from": "15551234567@c.us",
                        "body": "Hola",
                        "type": "chat",
                    }
                },
            },
        )

        assert response.status_code == 200
        assert response.json() == {"status": "received"}
        assert db.query(Message).one().content == "Hola"

    @patch("chatrelay.services.webhook_service.WhatsappWebClient")
    def test_group_message_is_stored_without_ai(self, mock_client_class, client, db, chatbot, web_channel, notifications):
        mock_client_class.return_value.get_group_info.return_value = {"name": "Team"}
        client.post(
            "/webhook/whatsapp_web",
            json={
                "dataType": "message",
                "sessionId": f"chatbot-{chatbot.id}",
                "data": {
                    "message": {
                        "id": {"_serialized": "false_1203@g.us_G1"},
                        "from": "120363041234567890@g.us",
                        "author": "15557654321@c.us",
                        "body": "Team update",
                        "type": "chat",
                    }
                },
            },
        )

        conversation = db.query(Conversation).one()
        assert conversation.type == "group"
        assert conversation.mode == "human"
        message = db.query(Message).one()
        assert message.sender_contact.phone_number == "15557654321"
        assert db.query(Job).count() == 0
        assert conversation.name == "Team"
        mock_client_class.return_value.get_group_info.assert_called_once_with(
            f"chatbot-{chatbot.id}", "120363041234567890@g.us"
        )
        created = [payload["name"] for name, payload in notifications if name == notification_service.CONVERSATION_CREATED]
        assert created == ["120363041234567890@g.us", "Team"]

    @patch("chatrelay.services.webhook_service.WhatsappWebClient")
    def test_group_keeps_id_as_name_when_bridge_cannot_say(self, mock_client_class, client, db, chatbot, web_channel):
        mock_client_class.return_value.get_group_info.return_value = None

        response = client.post(
            "/webhook/whatsapp_web",
            json={
                "dataType": "message",
                "sessionId": f"chatbot-{chatbot.id}",
                "data": {
                    "message": {
                        "id": {"_serialized": "false_1203@g.us_G2"},
                        "from": "120363041234567890@g.us",
                        "author": "15557654321@c.us",
                        "body": "Anyone?",
                        "type": "chat",
                    }
                },
            },
        )

        assert response.status_code == 200
        assert db.query(Conversation).one().name == "120363041234567890@g.us"
        assert db.query(Message).count() == 1

    def test_echo_attaches_to_sent_message(self, client, db, chatbot, web_channel, make_event):
        from chatrelay.services import conversation_service

        conversation = conversation_service.resolve(db, web_channel, make_event(web_channel))
        outgoing = message_service.create_outgoing(db, conversation, "On my way", SenderType.HUMAN)
        db.commit()

        client.post(
            "/webhook/whatsapp_web",
            json={
                "dataType": "message_create",
                "sessionId": f"chatbot-{chatbot.id}",
                "data": {
                    "message": {
                        "id": {"_serialized": "true_15551234567@c.us_E1"},
                        "to": "15551234567@c.us",
                        "fromMe": True,
                        "body": "On my way",
                        "type": "chat",
                    }
                },
            },
        )

        db.refresh(outgoing)
        assert outgoing.external_message_id == "true_15551234567@c.us_E1"
        assert db.query(Message).count() == 1

    def test_ack_for_unknown_message_is_acknowledged(self, client, chatbot, web_channel):
        response = client.post(
            "/webhook/whatsapp_web",
            json={
                "dataType": "message_ack",
                "sessionId": f"chatbot-{chatbot.id}",
                "data": {"ack": 2, "message": {"id": {"_serialized": "true_unknown"}}},
            },
        )

        assert response.status_code == 200

    def test_unknown_session_is_acknowledged(self, client, db):
        response = client.post(
            "/webhook/whatsapp_web",
            json={
                "dataType": "message",
                "sessionId": "chatbot-00000000-0000-0000-0000-000000000000",
                "data": {"message": {"id": {"_serialized": "x"}, "from": "1@c.us", "body": "?", "type": "chat"}},
            },
        )

        assert response.status_code == 200
        assert db.query(Message).count() == 0

    def test_qr_code_published(self, client, chatbot, notifications):
        client.post(
            "/webhook/whatsapp_web",
            json={"dataType": "qr", "sessionId": f"chatbot-{chatbot.id}", "data": {"qr": "2@abc"}},
        )

        qr = [payload for name, payload in notifications if name == notification_service.CHANNEL_QR_CODE]
        assert qr == [{"session_id": f"chatbot-{chatbot.id}", "chatbot_id": str(chatbot.id), "qr": "2@abc"}]

    @patch("chatrelay.services.webhook_service.WhatsappWebClient")
    def test_ready_stores_phone_number(self, mock_client_class, client, db, chatbot, web_channel):
        mock_client_class.return_value.get_session_info.return_value = {
            "wid": {"user": "15550001111"},
            "pushname": "Acme Support",
        }

        client.post("/webhook/whatsapp_web", json={"dataType": "ready", "sessionId": f"chatbot-{chatbot.id}"})

        db.refresh(web_channel)
        assert web_channel.status == "connected"
        assert web_channel.credentials["phone_number"] == "15550001111"
        assert web_channel.credentials["phone_number_verified_name"] == "Acme Support"

    @patch("chatrelay.services.webhook_service.WhatsappWebClient")
    def test_ready_without_wid_leaves_channel_unchanged(self, mock_client_class, client, db, chatbot, web_channel):
        mock_client_class.return_value.get_session_info.return_value = {"pushname": "Acme Support"}
        previous_status = web_channel.status

        response = client.post(
            "/webhook/whatsapp_web", json={"dataType": "ready", "sessionId": f"chatbot-{chatbot.id}"}
        )

        assert response.json() == {"status": "received"}
        db.refresh(web_channel)
        assert web_channel.status == previous_status
        assert "phone_number" not in web_channel.credentials

    @patch("chatrelay.channels.whatsapp_web.httpx.Client")
    def test_ready_with_unreadable_session_info(self, mock_client_class, client, db, chatbot, web_channel):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.get.return_value.status_code = 200
        mock_client.get.return_value.text = "<html>upstream error</html>"
        mock_client.get.return_value.json.side_effect = ValueError("Expecting value")
        previous_status = web_channel.status

        response = client.post(
            "/webhook/whatsapp_web", json={"dataType": "ready", "sessionId": f"chatbot-{chatbot.id}"}
        )

        assert response.status_code == 200
        db.refresh(web_channel)
        assert web_channel.status == previous_status

    @patch("chatrelay.services.webhook_service.alert_error")
    @patch("chatrelay.services.webhook_service.WhatsappWebClient")
    def test_unexpected_lifecycle_error_is_acknowledged(self, mock_client_class, mock_alert, client, chatbot, web_channel):
        mock_client_class.return_value.get_session_info.side_effect = RuntimeError("bridge exploded")

        response = client.post(
            "/webhook/whatsapp_web", json={"dataType": "ready", "sessionId": f"chatbot-{chatbot.id}"}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "received"}
        mock_alert.assert_called_once()

    def test_status_broadcast_creates_nothing(self, client, db, chatbot, web_channel):
        response = client.post(
            "/webhook/whatsapp_web",
            json={
                "dataType": "message",
                "sessionId": f"chatbot-{chatbot.id}",
                "data": {
                    "message": {
                        "id": {"_serialized": "false_status@broadcast_S1"},
                        "from": "status@broadcast",
                        "author": "15551234567@c.us",
                        "body": "My story",
                        "type": "chat",
                    }
                },
            },
        )

        assert response.status_code == 200
        assert db.query(Conversation).count() == 0
        assert db.query(Job).count() == 0

    @patch("chatrelay.services.webhook_service.alert_warning")
    def test_disconnected(self, mock_alert, client, db, chatbot, web_channel, notifications):
        client.post(
            "/webhook/whatsapp_web",
            json={"event_type": "disconnected", "session_id": f"chatbot-{chatbot.id}"},
        )

        db.refresh(web_channel)
        assert web_channel.status == "disconnected"
        assert (notification_service.CHANNEL_STATUS, {"chatbot_channel_id": str(web_channel.id), "status": "disconnected"}) in notifications
        mock_alert.assert_called_once()

    def test_group_rename(self, client, db, chatbot, web_channel, make_event):
        from chatrelay.services import conversation_service

        conversation_service.resolve(
            db, web_channel, make_event(web_channel, external_conversation_id="1203@g.us", is_group=True)
        )
        db.commit()

        client.post(
            "/webhook/whatsapp_web",
            json={
                "dataType": "group_update",
                "sessionId": f"chatbot-{chatbot.id}",
                "data": {"notification": {"chatId": "1203@g.us", "body": "Weekend plans", "type": "subject"}},
            },
        )

        assert db.query(Conversation).one().name == "Weekend plans"


class TestTextMeBotWebhook:
    def _payload(self, to="5491122334455"):
        return {"type": "text", "from": "15551234567", "from_name": "Jane", "to": to, "message": "Hi there"}

    def test_stores_message(self, client, db, textmebot_channel):
        response = client.post("/webhook/textmebot", json=self._payload())

        assert response.status_code == 200
        assert response.json() == {"status": "received"}
        assert db.query(Message).one().content == "Hi there"

    def test_unknown_recipient_is_forbidden(self, client, db, textmebot_channel):
        response = client.post("/webhook/textmebot", json=self._payload(to="10000000000"))

        assert response.status_code == 403
        assert db.query(Message).count() == 0

    def test_missing_fields(self, client):
        response = client.post("/webhook/textmebot", json={"type": "text"})

        assert response.status_code == 422

    def test_sender_without_digits_is_acknowledged(self, client, db, textmebot_channel):
        payload = {**self._payload(), "from": "anonymous"}

        response = client.post("/webhook/textmebot", json=payload)

        assert response.status_code == 200
        assert db.query(Conversation).count() == 0
