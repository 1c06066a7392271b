import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chatrelay.channels.base import InboundEvent
from chatrelay.database import Base
from chatrelay.models import Channel, Chatbot, ChatbotChannel, Organization, User
from chatrelay.services import notification_service


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("ADMIN_TOKEN", "admin-secret")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs manual BEGIN for SAVEPOINT support
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    """Real session on an in-memory SQLite database."""
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _reset_notifications():
    notification_service.clear_listeners()
    yield
    notification_service.clear_listeners()


@pytest.fixture
def notifications():
    """Collect every published notification as (event, payload)."""
    received = []
    for name in (
        notification_service.CONVERSATION_CREATED,
        notification_service.MESSAGE_RECEIVED,
        notification_service.MESSAGE_CREATED,
        notification_service.MESSAGE_UPDATED,
        notification_service.CHANNEL_QR_CODE,
        notification_service.CHANNEL_STATUS,
    ):
        notification_service.subscribe(name, lambda payload, name=name: received.append((name, payload)))
    return received


@pytest.fixture
def organization(db):
    org = Organization(name="Acme")
    db.add(org)
    db.commit()
    return org


@pytest.fixture
def agent(db, organization):
    user = User(organization_id=organization.id, name="Agent Smith", email="agent@acme.test")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def chatbot(db, organization):
    bot = Chatbot(organization_id=organization.id, name="Support bot", system_prompt="You help Acme customers.")
    db.add(bot)
    db.commit()
    return bot


@pytest.fixture
def channels(db):
    rows = {
        slug: Channel(slug=slug, name=name)
        for slug, name in (
            ("whatsapp", "WhatsApp"),
            ("whatsapp-web", "WhatsApp Web"),
            ("textmebot", "TextMeBot"),
        )
    }
    db.add_all(rows.values())
    db.commit()
    return rows


@pytest.fixture
def cloud_channel(db, chatbot, channels):
    chatbot_channel = ChatbotChannel(
        chatbot_id=chatbot.id,
        channel_id=channels["whatsapp"].id,
        name="Cloud",
        credentials={"phone_number_id": "1029384756", "phone_number_access_token": "cloud-token"},
        settings={},
    )
    db.add(chatbot_channel)
    db.commit()
    return chatbot_channel


@pytest.fixture
def web_channel(db, chatbot, channels):
    chatbot_channel = ChatbotChannel(
        chatbot_id=chatbot.id,
        channel_id=channels["whatsapp-web"].id,
        name="Bridge",
        credentials={"session_id": f"chatbot-{chatbot.id}"},
        settings={},
    )
    db.add(chatbot_channel)
    db.commit()
    return chatbot_channel


@pytest.fixture
def textmebot_channel(db, chatbot, channels):
    chatbot_channel = ChatbotChannel(
        chatbot_id=chatbot.id,
        channel_id=channels["textmebot"].id,
        name="TextMeBot",
        credentials={"phone_number": "5491122334455", "api_key": "tmb-key"},
        settings={},
    )
    db.add(chatbot_channel)
    db.commit()
    return chatbot_channel


@pytest.fixture
def make_event():
    def _make(chatbot_channel, **overrides):
        fields = {
            "chatbot_channel_id": chatbot_channel.id,
            "external_conversation_id": "15551234567",
            "sender_identifier": "15551234567",
            "content": "Hello there",
            "external_message_id": "wamid.A1",
            "contact_display_name": "Jane",
        }
        fields.update(overrides)
        return InboundEvent(**fields)

    return _make
