"""
Unit tests for email content helpers.
"""

import pytest

from src.email_processing.handlers.content import (
    estimate_tokens,
    extract_email_address,
    is_sender_filtered,
    parse_message_id,
    sanitize_email_content,
    truncate_id,
)


class TestSanitize:
    """Test suite for body sanitizing."""

    def test_strips_markup_scripts_and_whitespace(self):
        html = "<html><head><style>p{}</style></head><body><p>Hello&nbsp;there</p>\n\n<script>x()</script><p>Bye</p></body></html>"

        assert sanitize_email_content(html) == "Hello there Bye"

    def test_truncates(self):
        assert sanitize_email_content("abcdefghij", max_length=4) == "abcd..."

    def test_empty(self):
        assert sanitize_email_content(None) == ""


class TestSenderFilter:
    """Test suite for sender filter matching."""

    @pytest.mark.parametrize("sender, patterns, expected", [
        ("news@newsletter.test", ["@newsletter.test"], True),
        ("news@mail.newsletter.test", ["@newsletter.test"], False),
        ("boss@acme.test", ["boss@acme.test"], True),
        ("Boss@Acme.test", ["boss@acme.test"], True),
        ("other@acme.test", ["boss@acme.test"], False),
        ("noreply@shop.test", ["noreply"], True),
        ("person@shop.test", ["", "  "], False),
        ("", ["@shop.test"], False),
    ])
    def test_patterns(self, sender, patterns, expected):
        assert is_sender_filtered(sender, patterns) is expected


class TestIdentifiers:
    """Test suite for message id handling."""

    def test_parse_message_id_from_resource(self):
        resource = "Users/8f3c/Messages/AAMkAGI2TG93AAA="

        assert parse_message_id(resource) == "AAMkAGI2TG93AAA="

    def test_short_id_is_invalid(self):
        assert parse_message_id("Users/8f3c/Messages/short") is None
        assert parse_message_id("") is None

    def test_truncate_id(self):
        assert truncate_id("AAMkAGI2TG93AAAmessage0001=") == "AAMkAGI2TG93AAA..."
        assert truncate_id("short") == "short"

    def test_extract_email_address(self):
        assert extract_email_address({"emailAddress": {"address": "a@b.test", "name": "A"}}) == "a@b.test"
        assert extract_email_address("c@d.test") == "c@d.test"
        assert extract_email_address(None) == ""

    def test_estimate_tokens(self):
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("") == 0
