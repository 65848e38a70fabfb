"""FitCoach - Streamlit Chat Interface.

Thin client for the AI fitness coach. All business logic lives in the
FastAPI backend and the ChatSession object. This file handles:
  - One ChatSession per browser tab (st.session_state)
  - Conversation sidebar with open/delete
  - Chat input with an optional image attachment
  - Guest and plan banners, toasts for every outcome
"""

import base64
import binascii
import time

import streamlit as st

from coach_frontend.api_client import ApiError, ChatApiClient, ImageUpload
from coach_frontend.session import ConversationMismatchError, ConversationNotReadyError, ChatSession
from coach_frontend.toasts import Toast, toast_for_error

_TOAST_ICONS = {"success": "✅", "info": "ℹ️", "warning": "⚠️", "error": "❌"}

# Page setup
st.set_page_config(
    page_title="FitCoach - AI Fitness Coach",
    layout="centered",
)

# Custom styles
st.markdown("""
<style>
    .stApp {
        max-width: 900px;
        margin: 0 auto;
    }
    .stChatMessage {
        padding: 0.75rem 1rem;
    }
    div[data-testid="stImage"] {
        border-radius: 8px;
        overflow: hidden;
        border: 1px solid rgba(128, 128, 128, 0.2);
    }
</style>
""", unsafe_allow_html=True)


def show_toast(toast: Toast):
    text = f"**{toast.title}**" + (f"\n\n{toast.message}" if toast.message else "")
    st.toast(text, icon=_TOAST_ICONS.get(toast.category))


def init_session() -> ChatSession:
    """Create the ChatSession on first load."""
    if "chat" not in st.session_state:
        chat = ChatSession(ChatApiClient(), notifier=show_toast)
        chat.load_conversations()
        chat.refresh_plan()
        st.session_state.chat = chat
        st.session_state.uploader_key = 0
    else:
        # Toasts raised by callbacks must go to the current script run
        st.session_state.chat.notify = show_toast
    return st.session_state.chat


def render_entry(entry):
    """Render a single chat message with its optional image."""
    with st.chat_message(entry.role):
        st.markdown(entry.content)
        if entry.image_data:
            try:
                st.image(base64.b64decode(entry.image_data), use_container_width=True)
            except (binascii.Error, ValueError):
                st.warning("[WARN] Could not decode image.")


def render_sidebar(chat: ChatSession):
    with st.sidebar:
        if st.button("New Chat", use_container_width=True, disabled=chat.sending):
            chat.new_chat()
            st.rerun()

        st.divider()
        if chat.is_guest:
            st.markdown("### Guest mode")
            st.info(f"{chat.guest_messages_remaining} of 4 free messages left. "
                    "Sign in to save your conversations.")
            return

        plan = chat.plan or {}
        st.markdown(f"### Plan: {plan.get('plan', 'FREE')}")
        if plan.get("dailyLimit") is not None:
            st.progress(
                min(plan.get("messagesUsedToday", 0) / max(plan["dailyLimit"], 1), 1.0),
                text=f"{plan.get('messagesUsedToday', 0)} / {plan['dailyLimit']} messages today",
            )
        if chat.limit_reached and st.button("Refresh plan", use_container_width=True):
            chat.refresh_plan()
            st.rerun()

        st.divider()
        st.markdown("### Conversations")
        if not chat.conversations:
            st.caption("No conversations yet.")
        for conv in chat.conversations:
            cols = st.columns([5, 1])
            active = conv["id"] == chat.conversation_id
            label = ("▶ " if active else "") + (conv.get("title") or f"Chat {conv['id'][-6:]}")
            if cols[0].button(label, key=f"open-{conv['id']}", use_container_width=True):
                chat.open_conversation(conv["id"])
                st.rerun()
            if cols[1].button("🗑", key=f"del-{conv['id']}"):
                chat.delete_conversation(conv["id"])
                st.rerun()

        render_knowledge(chat)


def render_knowledge(chat: ChatSession):
    """Sidebar list of the user's uploaded knowledge files with download."""
    with st.expander("Knowledge files"):
        try:
            items = chat.client.list_knowledge()
        except ApiError as e:
            show_toast(toast_for_error(e, "load knowledge files"))
            return
        if not items:
            st.caption("No files uploaded yet.")
            return

        names = {item["id"]: item["fileName"] for item in items}
        item_id = st.selectbox("File", list(names), format_func=names.get)
        if st.button("Prepare download", use_container_width=True):
            try:
                st.session_state.knowledge_file = (names[item_id], chat.client.download_knowledge(item_id))
            except ApiError as e:
                show_toast(toast_for_error(e, "download file"))

        if st.session_state.get("knowledge_file"):
            file_name, data = st.session_state.knowledge_file
            st.download_button(f"Save {file_name}", data=data, file_name=file_name,
                               use_container_width=True)


def send_message(chat: ChatSession, user_input: str, upload):
    """Send through the session and render the optimistic entry while waiting."""
    image = None
    if upload is not None:
        image = ImageUpload(filename=upload.name, data=upload.getvalue(), mime_type=upload.type)

    with st.chat_message("user"):
        st.markdown(user_input or "[1 Image]")
        if image:
            st.image(image.data, use_container_width=True)

    with st.chat_message("assistant"):
        with st.status("[FitCoach] Thinking...", expanded=False) as status:
            start_time = time.monotonic()
            try:
                reply = chat.send(user_input, image=image)
            except (ConversationNotReadyError, ConversationMismatchError) as e:
                status.update(label="Not sent", state="error")
                st.error(f"[ERROR] {e}. Please wait a moment and try again.")
                return
            latency_ms = int((time.monotonic() - start_time) * 1000)
            if reply is None:
                status.update(label="Not sent", state="error")
            else:
                status.update(label=f"[TIME] {latency_ms}ms", state="complete")

    if reply is not None:
        st.session_state.uploader_key += 1
        if not chat.is_guest:
            chat.load_conversations()
    st.rerun()


def main():
    """Run the Streamlit chat application."""
    chat = init_session()

    api_online = True
    try:
        api_online = chat.client.health().get("status") != "unhealthy"
    except ApiError:
        api_online = False

    st.title("FitCoach")
    st.caption("Your AI personal trainer and nutrition coach")

    if not api_online:
        st.warning("[WARN] The FitCoach API is currently offline or waking up.")

    render_sidebar(chat)

    for entry in chat.transcript:
        render_entry(entry)

    upload = st.file_uploader(
        "Attach a photo (meal, form check, progress)",
        type=["jpg", "jpeg", "png", "gif", "webp"],
        key=f"image-{st.session_state.uploader_key}",
    )

    if user_input := st.chat_input("Ask your coach about training, nutrition or recovery..."):
        send_message(chat, user_input, upload)
    elif upload is not None and st.button("Send photo without text"):
        send_message(chat, "", upload)


if __name__ == "__main__":
    main()
