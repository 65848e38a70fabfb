"""HTTP client for the FitCoach API.

Every failure is turned into an ApiError at this boundary, so callers branch
on ``error.kind`` and never inspect requests exceptions or raw bodies.
"""

import os
from dataclasses import dataclass

import requests

NETWORK = "NETWORK"
UNKNOWN = "UNKNOWN"
MESSAGE_LIMIT_REACHED = "MESSAGE_LIMIT_REACHED"

_STATUS_TO_KIND = {
    400: "VALIDATION",
    401: "AUTHENTICATION",
    403: "AUTHORIZATION",
    404: "NOT_FOUND",
    413: "FILE_UPLOAD",
    422: "VALIDATION",
    429: "RATE_LIMIT",
    500: "UNKNOWN",
    502: "EXTERNAL_SERVICE",
    503: "EXTERNAL_SERVICE",
    504: "EXTERNAL_SERVICE",
}


class ApiError(Exception):
    """Tagged failure of an API call.

    Attributes:
        kind: Server error code (e.g. VALIDATION, MESSAGE_LIMIT_REACHED) or NETWORK.
        message: Human-readable text safe to show.
        detail: Debug text when the server provided it.
        status: HTTP status, None for network failures.
    """

    def __init__(self, kind: str, message: str, detail: str | None = None, status: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail
        self.status = status

    def __repr__(self):
        return f"ApiError(kind={self.kind!r}, status={self.status!r}, message={self.message!r})"

    @classmethod
    def from_response(cls, resp: requests.Response) -> "ApiError":
        """Build an error from a non-2xx response, JSON or not."""
        fallback_kind = _STATUS_TO_KIND.get(resp.status_code, UNKNOWN)
        try:
            body = resp.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and (body.get("error") or body.get("message")):
            return cls(
                kind=body.get("error") or fallback_kind,
                message=body.get("message") or body.get("error"),
                detail=body.get("detail"),
                status=resp.status_code,
            )

        text = (resp.text or "").strip()
        if resp.reason:
            message = f"HTTP {resp.status_code}: {resp.reason}"
        elif text:
            message = text[:200]
        else:
            message = "Request failed. Please try again."
        return cls(kind=fallback_kind, message=message, detail=text or None, status=resp.status_code)


@dataclass
class ImageUpload:
    filename: str
    data: bytes
    mime_type: str


class ChatApiClient:
    """Thin wrapper over a requests.Session bound to one API base URL."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ):
        self.base_url = (base_url or os.environ.get("API_URL", "http://localhost:8000")).rstrip("/")
        self.token = token if token is not None else (os.environ.get("API_TOKEN") or None)
        self.timeout = timeout or float(os.environ.get("API_TIMEOUT", "60"))
        self.http = session or requests.Session()

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            resp = self.http.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.Timeout:
            raise ApiError(NETWORK, "The request timed out. Please try again.")
        except requests.ConnectionError:
            raise ApiError(NETWORK, "Cannot reach the coach service. Check your connection.")
        except requests.RequestException as e:
            raise ApiError(NETWORK, "Network error. Please try again.", detail=str(e))

        if not resp.ok:
            raise ApiError.from_response(resp)
        return resp

    def _json(self, method: str, path: str, **kwargs) -> dict:
        resp = self._request(method, path, **kwargs)
        try:
            return resp.json()
        except ValueError:
            raise ApiError(UNKNOWN, "The server sent an unreadable response.",
                           detail=resp.text[:200], status=resp.status_code)

    def send_chat(
        self,
        message: str,
        conversation_id: str = "",
        is_guest: bool = False,
        image: ImageUpload | None = None,
    ) -> dict:
        """POST /api/chat. Multipart when an image is attached, JSON otherwise."""
        if image is None:
            return self._json("POST", "/api/chat", json={
                "message": message,
                "conversationId": conversation_id,
                "isGuest": is_guest,
            })
        return self._json(
            "POST",
            "/api/chat",
            data={
                "message": message,
                "conversationId": conversation_id,
                "isGuest": "true" if is_guest else "false",
            },
            files={"image": (image.filename, image.data, image.mime_type)},
        )

    def list_conversations(self) -> list[dict]:
        return self._json("GET", "/api/conversations").get("conversations", [])

    def get_conversation_messages(self, conversation_id: str) -> dict:
        return self._json("GET", f"/api/conversations/{conversation_id}/messages")["conversation"]

    def delete_conversation(self, conversation_id: str) -> bool:
        return bool(self._json("DELETE", f"/api/conversations/{conversation_id}").get("success"))

    def get_plan(self) -> dict:
        return self._json("GET", "/api/user/plan")

    def list_knowledge(self) -> list[dict]:
        return self._json("GET", "/api/knowledge").get("knowledgeItems", [])

    def download_knowledge(self, item_id: int, inline: bool = False) -> bytes:
        resp = self._request("GET", f"/api/knowledge/{item_id}/download",
                             params={"inline": "true" if inline else "false"})
        return resp.content

    def health(self) -> dict:
        return self._json("GET", "/health")
