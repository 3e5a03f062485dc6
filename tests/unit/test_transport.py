"""Unit tests for transport hardening helpers."""

import pytest
from starlette.requests import ClientDisconnect

from flowgate.errors import PayloadTooLargeError, RejectionReason
from flowgate.gateway.transport import (
    check_content_length,
    check_content_type,
    media_type,
    read_body_limited,
    replay_receive,
    security_headers,
)

ALLOWED = ("application/json", "application/x-www-form-urlencoded", "multipart/form-data")


def fake_receive(*chunks: bytes, disconnect: bool = False):
    messages = [
        {"type": "http.request", "body": c, "more_body": i < len(chunks) - 1}
        for i, c in enumerate(chunks)
    ]
    if disconnect:
        messages[-1]["more_body"] = True
        messages.append({"type": "http.disconnect"})
    consumed: list[dict] = []

    async def receive() -> dict:
        message = messages.pop(0)
        consumed.append(message)
        return message

    receive.consumed = consumed  # type: ignore[attr-defined]
    return receive


class TestHeaders:
    """Tests for header helpers."""

    def test_security_headers(self) -> None:
        headers = security_headers(600)

        assert headers["X-Content-Type-Options"] == "nosniff"
        assert headers["X-Frame-Options"] == "DENY"
        assert headers["Strict-Transport-Security"].startswith("max-age=600;")
        assert "default-src 'self'" in headers["Content-Security-Policy"]

    def test_media_type(self) -> None:
        assert media_type("Application/JSON; charset=utf-8") == "application/json"
        assert media_type(None) is None
        assert media_type(";") is None


class TestContentLength:
    """Tests for check_content_length."""

    def test_within_limit(self) -> None:
        assert check_content_length({"content-length": "10"}, 10) is None

    def test_over_limit(self) -> None:
        assert check_content_length({"content-length": "11"}, 10) == (
            RejectionReason.PAYLOAD_TOO_LARGE
        )

    def test_malformed(self) -> None:
        assert check_content_length({"content-length": "ten"}, 10) == (
            RejectionReason.PAYLOAD_TOO_LARGE
        )

    def test_undeclared(self) -> None:
        assert check_content_length({}, 10) is None


class TestContentType:
    """Tests for check_content_type."""

    def test_safe_methods_skip(self) -> None:
        assert check_content_type("GET", {"content-type": "text/xml"}, ALLOWED) is None

    def test_delete_without_body_skips(self) -> None:
        assert check_content_type("DELETE", {}, ALLOWED) is None
        assert check_content_type("DELETE", {"content-type": "text/plain"}, ALLOWED) is None

    def test_delete_with_body_checked(self) -> None:
        assert check_content_type("DELETE", {"content-length": "4"}, ALLOWED) == (
            RejectionReason.UNSUPPORTED_CONTENT_TYPE
        )
        json_body = {"content-type": "application/json", "content-length": "4"}
        assert check_content_type("DELETE", json_body, ALLOWED) is None

    def test_allowed_with_parameters(self) -> None:
        headers = {"content-type": "application/json; charset=utf-8", "content-length": "2"}
        assert check_content_type("POST", headers, ALLOWED) is None

    def test_multipart_boundary(self) -> None:
        headers = {"content-type": "multipart/form-data; boundary=xyz", "content-length": "9"}
        assert check_content_type("PUT", headers, ALLOWED) is None

    def test_disallowed(self) -> None:
        headers = {"content-type": "text/xml", "content-length": "9"}
        assert check_content_type("PATCH", headers, ALLOWED) == (
            RejectionReason.UNSUPPORTED_CONTENT_TYPE
        )

    def test_empty_post_without_type_passes(self) -> None:
        assert check_content_type("POST", {}, ALLOWED) is None
        assert check_content_type("POST", {"content-length": "0"}, ALLOWED) is None

    def test_body_without_type_rejected(self) -> None:
        assert check_content_type("POST", {"content-length": "5"}, ALLOWED) == (
            RejectionReason.UNSUPPORTED_CONTENT_TYPE
        )
        assert check_content_type("POST", {"transfer-encoding": "chunked"}, ALLOWED) == (
            RejectionReason.UNSUPPORTED_CONTENT_TYPE
        )


class TestReadBodyLimited:
    """Tests for read_body_limited."""

    @pytest.mark.asyncio
    async def test_joins_chunks(self) -> None:
        body = await read_body_limited(fake_receive(b"ab", b"cd", b""), 10)

        assert body == b"abcd"

    @pytest.mark.asyncio
    async def test_exact_limit_allowed(self) -> None:
        assert await read_body_limited(fake_receive(b"12345", b"67890"), 10) == b"1234567890"

    @pytest.mark.asyncio
    async def test_stops_reading_over_limit(self) -> None:
        """Chunks after the one that crossed the ceiling are never pulled."""
        receive = fake_receive(b"123456", b"789012", b"never")

        with pytest.raises(PayloadTooLargeError):
            await read_body_limited(receive, 10)

        assert len(receive.consumed) == 2  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_disconnect(self) -> None:
        with pytest.raises(ClientDisconnect):
            await read_body_limited(fake_receive(b"12", disconnect=True), 10)

    @pytest.mark.asyncio
    async def test_replay_then_delegate(self) -> None:
        inner = fake_receive(b"ignored")
        receive = replay_receive(b"sanitized", inner)

        first = await receive()
        second = await receive()

        assert first == {"type": "http.request", "body": b"sanitized", "more_body": False}
        assert second["body"] == b"ignored"
