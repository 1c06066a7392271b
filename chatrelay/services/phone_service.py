import re

GROUP_SUFFIX = "@g.us"
CONTACT_SUFFIX = "@c.us"

_NON_DIGITS = re.compile(r"\D")


def normalize_phone_number(value: str) -> str:
    """Reduce a phone number or WhatsApp id to digits, fixing mobile prefixes.

    Argentina, Brazil and Mexico mobile numbers arrive without the extra
    mobile digit from some providers; it is added back so one person maps
    to one contact.
    """
    digits = _NON_DIGITS.sub("", value or "")

    if digits.startswith("54") and len(digits) == 12:
        return "549" + digits[2:]
    if digits.startswith("55") and len(digits) == 12:
        return digits[:4] + "9" + digits[4:]
    if digits.startswith("52") and len(digits) == 12:
        return "521" + digits[2:]
    return digits


def is_group_identifier(value: str | None) -> bool:
    return bool(value) and value.endswith(GROUP_SUFFIX)


def to_chat_id(identifier: str) -> str:
    """WhatsApp-Web chat id: ``<number>@c.us`` unless already qualified."""
    if identifier.endswith(CONTACT_SUFFIX) or identifier.endswith(GROUP_SUFFIX):
        return identifier
    return f"{normalize_phone_number(identifier)}{CONTACT_SUFFIX}"
