import pytest

from chatrelay.services.phone_service import is_group_identifier, normalize_phone_number, to_chat_id


class TestNormalizePhoneNumber:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("+1 (555) 123-4567", "15551234567"),
            ("15551234567@c.us", "15551234567"),
            ("541122334455", "5491122334455"),
            ("551199887766", "5511999887766"),
            ("525512345678", "5215512345678"),
        ],
    )
    def test_normalizes(self, raw, expected):
        assert normalize_phone_number(raw) == expected

    def test_already_mobile_argentina_number_unchanged(self):
        assert normalize_phone_number("5491122334455") == "5491122334455"

    def test_empty_input(self):
        assert normalize_phone_number("") == ""
        assert normalize_phone_number(None) == ""


class TestIdentifiers:
    def test_group_identifier(self):
        assert is_group_identifier("120363041234567890@g.us") is True
        assert is_group_identifier("15551234567@c.us") is False
        assert is_group_identifier(None) is False

    def test_to_chat_id_adds_contact_suffix(self):
        assert to_chat_id("+1 555 123 4567") == "15551234567@c.us"

    def test_to_chat_id_keeps_qualified_ids(self):
        assert to_chat_id("120363041234567890@g.us") == "120363041234567890@g.us"
        assert to_chat_id("15551234567@c.us") == "15551234567@c.us"
