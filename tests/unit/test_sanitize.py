"""Unit tests for input sanitization."""

import pytest

from flowgate.gateway.sanitize import (
    encode_body,
    parse_body,
    sanitize_query_string,
    sanitize_string,
    sanitize_value,
)


class TestSanitizeString:
    """Tests for sanitize_string."""

    def test_plain_text_unchanged(self) -> None:
        assert sanitize_string("quarterly report 2024") == "quarterly report 2024"

    def test_html_escaped(self) -> None:
        assert sanitize_string("<b>hi</b>") == "&lt;b&gt;hi&lt;&#x2F;b&gt;"
        assert sanitize_string('say "hi"') == "say &quot;hi&quot;"

    def test_sql_characters_stripped(self) -> None:
        assert sanitize_string("a';b\\c") == "abc"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("1 UNION SELECT password", "1   password"),
            ("DROP table users", " table users"),
            ("please Delete me", "please  me"),
        ],
    )
    def test_sql_keywords_removed(self, raw: str, expected: str) -> None:
        assert sanitize_string(raw) == expected

    def test_keywords_inside_words_kept(self) -> None:
        """Only whole words are removed."""
        assert sanitize_string("selection updated dropdown") == "selection updated dropdown"

    def test_script_injection_neutralized(self) -> None:
        result = sanitize_string("<script>alert('x')</script>")

        assert "<" not in result
        assert "'" not in result
        assert result == "&lt;script&gt;alert(x)&lt;&#x2F;script&gt;"

    def test_escape_html_optional(self) -> None:
        assert sanitize_string("<a href='/x'>", escape_html=False) == "<a href=/x>"


class TestSanitizeValue:
    """Tests for recursive sanitization."""

    def test_nested_structures(self) -> None:
        body = {
            "name": "<i>wf</i>",
            "steps": [{"cmd": "DROP x"}, 3, None, True],
            "count": 7,
        }

        assert sanitize_value(body) == {
            "name": "&lt;i&gt;wf&lt;&#x2F;i&gt;",
            "steps": [{"cmd": " x"}, 3, None, True],
            "count": 7,
        }

    def test_keys_not_rewritten(self) -> None:
        assert sanitize_value({"<k>": "v"}) == {"<k>": "v"}


class TestQueryAndBody:
    """Tests for query string and body helpers."""

    def test_query_string_not_html_escaped(self) -> None:
        assert sanitize_query_string("q=%3Cb%3E&page=2") == "q=%3Cb%3E&page=2"

    def test_query_string_sql_stripped(self) -> None:
        assert sanitize_query_string("q=1%27%3B+DROP+users") == "q=1++users"

    def test_query_path_values_survive(self) -> None:
        assert sanitize_query_string("next=%2Fa%2Fb") == "next=%2Fa%2Fb"

    def test_query_string_blank_values_kept(self) -> None:
        assert sanitize_query_string("flag=&x=1") == "flag=&x=1"

    def test_parse_json(self) -> None:
        assert parse_body(b'{"a": [1, "b"]}', "application/json") == {"a": [1, "b"]}

    def test_parse_invalid_json(self) -> None:
        assert parse_body(b"{not json", "application/json") is None

    def test_parse_form(self) -> None:
        form = parse_body(b"name=wf&_csrf=abc", "application/x-www-form-urlencoded")

        assert form.multi_items() == [("name", "wf"), ("_csrf", "abc")]
        assert form.get("_csrf") == "abc"

    def test_repeated_form_keys_survive(self) -> None:
        """Every value of a repeated key is parsed, sanitized and re-encoded."""
        form_type = "application/x-www-form-urlencoded"

        form = sanitize_value(parse_body(b"tag=a&tag=%3Cb%3E&name=wf", form_type))

        assert form.getlist("tag") == ["a", "&lt;b&gt;"]
        assert encode_body(form, form_type) == b"tag=a&tag=%26lt%3Bb%26gt%3B&name=wf"

    def test_parse_other_types(self) -> None:
        assert parse_body(b"hello", "text/plain") is None
        assert parse_body(b"", "application/json") is None
        assert parse_body(b"\xff\xfe", "application/json") is None

    def test_encode(self) -> None:
        assert encode_body({"a": "é"}, "application/json") == '{"a": "é"}'.encode()
        assert encode_body({"a": "1", "b": "x y"}, "application/x-www-form-urlencoded") == (
            b"a=1&b=x+y"
        )
