"""User-facing notifications for API outcomes."""

from dataclasses import dataclass

from coach_frontend.api_client import MESSAGE_LIMIT_REACHED, NETWORK, ApiError


@dataclass(frozen=True)
class Toast:
    """A notification for the UI.

    Attributes:
        category: "success", "info", "warning" or "error".
        title: Short heading.
        message: Body text.
    """
    category: str
    title: str
    message: str


def success(title: str, message: str = "") -> Toast:
    return Toast("success", title, message)


def info(title: str, message: str = "") -> Toast:
    return Toast("info", title, message)


def upgrade_prompt(message: str | None = None) -> Toast:
    return Toast(
        "warning",
        "Daily limit reached",
        message or "You have used all of today's free messages. Upgrade to Pro for unlimited coaching.",
    )


def guest_limit() -> Toast:
    return Toast(
        "warning",
        "Guest limit reached",
        "Sign in to keep chatting with your coach and save your conversations.",
    )


def toast_for_error(error: ApiError, operation: str) -> Toast:
    """Map an API failure to the notification shown for it.

    Args:
        error: The tagged failure from the API client.
        operation: What the user was doing, e.g. "send message".
    """
    kind = error.kind
    if kind == "VALIDATION":
        return Toast("error", "Invalid input", error.message)
    if kind == "AUTHENTICATION":
        return Toast("error", "Sign in required", error.message or "Please sign in to continue.")
    if kind == "AUTHORIZATION":
        return Toast("error", "Access denied", error.message)
    if kind == "NOT_FOUND":
        return Toast("error", "Not found", error.message)
    if kind == "FILE_UPLOAD":
        return Toast("error", "File validation failed", error.message)
    if kind == NETWORK:
        return Toast("error", "Connection problem",
                     f"Could not {operation}. Check your connection and try again.")
    if kind == MESSAGE_LIMIT_REACHED:
        return upgrade_prompt(error.message)
    return Toast("error", "Error", error.message or f"Failed to {operation}. Please try again.")
