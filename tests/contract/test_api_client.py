"""Contract tests for the HTTP client (requests mocked, no real server)."""

import json

import pytest
import requests

from coach_frontend.api_client import (
    MESSAGE_LIMIT_REACHED,
    NETWORK,
    ApiError,
    ChatApiClient,
    ImageUpload,
)


def _response(status: int, body=None, text: str | None = None, reason: str | None = None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp.reason = reason
    if body is not None:
        resp._content = json.dumps(body).encode()
        resp.headers["Content-Type"] = "application/json"
    else:
        resp._content = (text or "").encode()
    return resp


@pytest.fixture
def http(mocker):
    return mocker.Mock(spec=requests.Session)


@pytest.fixture
def client(http):
    return ChatApiClient(base_url="http://api.test/", token="tok", timeout=5, session=http)


class TestRequests:

    def test_json_chat_payload(self, client, http):
        http.request.return_value = _response(200, {"conversationId": "c1"})

        assert client.send_chat("hi", conversation_id="", is_guest=False) == {"conversationId": "c1"}

        method, url = http.request.call_args.args
        kwargs = http.request.call_args.kwargs
        assert (method, url) == ("POST", "http://api.test/api/chat")
        assert kwargs["json"] == {"message": "hi", "conversationId": "", "isGuest": False}
        assert kwargs["headers"] == {"Authorization": "Bearer tok"}
        assert kwargs["timeout"] == 5

    def test_multipart_when_image_attached(self, client, http):
        http.request.return_value = _response(200, {"conversationId": "c1"})
        image = ImageUpload("meal.png", b"\x89PNG", "image/png")

        client.send_chat("", conversation_id="c1", is_guest=True, image=image)

        kwargs = http.request.call_args.kwargs
        assert kwargs["data"] == {"message": "", "conversationId": "c1", "isGuest": "true"}
        assert kwargs["files"] == {"image": ("meal.png", b"\x89PNG", "image/png")}

    def test_guest_sends_no_auth_header(self, http):
        guest = ChatApiClient(base_url="http://api.test", token="", session=http)
        http.request.return_value = _response(200, {"conversations": []})

        guest.list_conversations()
        assert http.request.call_args.kwargs["headers"] == {}
        assert not guest.is_authenticated

    def test_timeout_from_env(self, monkeypatch, http):
        monkeypatch.setenv("API_TIMEOUT", "12")
        assert ChatApiClient(base_url="http://api.test", session=http).timeout == 12.0

    def test_download_inline_param(self, client, http):
        http.request.return_value = _response(200, text="%PDF-1.4")
        assert client.download_knowledge(3, inline=True) == b"%PDF-1.4"
        assert http.request.call_args.kwargs["params"] == {"inline": "true"}


class TestErrorConversion:

    def test_structured_error_body(self, client, http):
        http.request.return_value = _response(429, {
            "error": MESSAGE_LIMIT_REACHED, "message": "Daily limit reached", "type": "RATE_LIMIT",
        })

        with pytest.raises(ApiError) as exc:
            client.send_chat("hi")

        assert exc.value.kind == MESSAGE_LIMIT_REACHED
        assert exc.value.message == "Daily limit reached"
        assert exc.value.status == 429

    def test_non_json_error_uses_status_text(self, client, http):
        http.request.return_value = _response(502, text="<html>Bad gateway</html>", reason="Bad Gateway")

        with pytest.raises(ApiError) as exc:
            client.get_plan()

        assert exc.value.kind == "EXTERNAL_SERVICE"
        assert exc.value.message == "HTTP 502: Bad Gateway"
        assert exc.value.detail == "<html>Bad gateway</html>"

    def test_non_json_error_without_reason_uses_body(self, client, http):
        http.request.return_value = _response(500, text="upstream exploded")

        with pytest.raises(ApiError) as exc:
            client.get_plan()

        assert exc.value.message == "upstream exploded"

    def test_empty_error_uses_canned_message(self, client, http):
        http.request.return_value = _response(404, text="")

        with pytest.raises(ApiError) as exc:
            client.get_conversation_messages("c1")

        assert exc.value.kind == "NOT_FOUND"
        assert exc.value.message == "Request failed. Please try again."

    @pytest.mark.parametrize("exc_class", [requests.Timeout, requests.ConnectionError])
    def test_transport_errors_become_network(self, client, http, exc_class):
        http.request.side_effect = exc_class("boom")

        with pytest.raises(ApiError) as exc:
            client.send_chat("hi")

        assert exc.value.kind == NETWORK
        assert exc.value.status is None

    def test_unreadable_success_body(self, client, http):
        http.request.return_value = _response(200, text="not json")

        with pytest.raises(ApiError) as exc:
            client.list_conversations()

        assert exc.value.kind == "UNKNOWN"
