from chatrelay.models.channel import Channel
from chatrelay.models.chatbot import Chatbot
from chatrelay.models.chatbot_channel import ChatbotChannel
from chatrelay.models.contact import Contact
from chatrelay.models.contact_channel import ContactChannel
from chatrelay.models.conversation import Conversation
from chatrelay.models.job import Job
from chatrelay.models.message import Message
from chatrelay.models.organization import Organization
from chatrelay.models.user import User

__all__ = [
    "Organization",
    "User",
    "Channel",
    "Chatbot",
    "ChatbotChannel",
    "Contact",
    "ContactChannel",
    "Conversation",
    "Message",
    "Job",
]
