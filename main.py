import asyncio
import os
from typing import Dict, List, Optional

import httpx
import streamlit as st
from dotenv import load_dotenv

from src.chatrelay.client.reassembly import ChatStreamClient, InProgressMessage, MessageStatus, StreamRequestError
from src.chatrelay.utils.timefmt import format_timestamp, relative_time


st.set_page_config(page_title="Chat Relay", page_icon="💬", layout="centered")

st.markdown(
    """
    <style>
      :root { --brand:#0B5FFF; }
      .block-container { padding-top: 1.25rem; padding-bottom: 2rem; max-width: 900px; }
      hr.relay { border: none; border-top: 1px solid #E6E9EF; margin: .25rem 0 1.25rem; }
      div.stButton > button { width: 100%; }
      .relay-muted { color: #475467; font-size: .9rem; }
      .relay-status { color: #B42318; font-size: .85rem; }
    </style>
    """,
    unsafe_allow_html=True,
)

# ---------- Config ----------
load_dotenv()

if "api_base" not in st.session_state:
    st.session_state["api_base"] = os.getenv("CHATRELAY_API_BASE", "http://127.0.0.1:8000")
if "token" not in st.session_state:
    st.session_state["token"] = os.getenv("CHATRELAY_TOKEN", "")
if "chat_id" not in st.session_state:
    st.session_state["chat_id"] = None


def _headers() -> Dict[str, str]:
    token = st.session_state.get("token")
    return {"Authorization": f"Bearer {token}"} if token else {}


def api(method: str, path: str, **kwargs) -> Optional[httpx.Response]:
    try:
        resp = httpx.request(method, st.session_state["api_base"] + path, headers=_headers(), timeout=15.0, **kwargs)
    except httpx.HTTPError as exc:
        st.error(f"API unreachable: {exc}")
        return None
    if resp.status_code >= 400:
        try:
            detail = resp.json().get("detail", resp.text)
        except ValueError:
            detail = resp.text
        st.error(f"{resp.status_code}: {detail}")
        return None
    return resp


def load_chats() -> List[dict]:
    resp = api("GET", "/chats")
    return resp.json() if resp is not None else []


def stream_reply(chat_id: str, content: str, placeholder) -> InProgressMessage:
    def _render(message: InProgressMessage) -> None:
        placeholder.markdown(message.content + ("▌" if message.status is MessageStatus.STREAMING else ""))

    async def _run() -> InProgressMessage:
        client = ChatStreamClient(
            base_url=st.session_state["api_base"],
            token=st.session_state.get("token") or None,
            on_update=_render,
        )
        try:
            return await client.send(chat_id, content)
        finally:
            await client.aclose()

    return asyncio.run(_run())


# ---------- Sidebar ----------
with st.sidebar:
    st.header("Chat Relay")
    st.text_input("API base URL", key="api_base")
    st.text_input("Bearer token", key="token", type="password")
    st.markdown("<hr class='relay'/>", unsafe_allow_html=True)

    with st.form("new_chat", clear_on_submit=True):
        title = st.text_input("New chat title")
        if st.form_submit_button("Create chat") and title.strip():
            resp = api("POST", "/chats", json={"title": title.strip()})
            if resp is not None:
                st.session_state["chat_id"] = resp.json()["chat_id"]

    for chat in load_chats():
        label = f"{chat['title']} · {relative_time(chat['updated_at'])}"
        if st.button(label, key=f"chat_{chat['chat_id']}"):
            st.session_state["chat_id"] = chat["chat_id"]

# ---------- Conversation ----------
chat_id = st.session_state.get("chat_id")
if not chat_id:
    st.title("Chat Relay")
    st.markdown("<p class='relay-muted'>Create or pick a chat in the sidebar.</p>", unsafe_allow_html=True)
    st.stop()

resp = api("GET", f"/chats/{chat_id}")
if resp is None:
    st.session_state["chat_id"] = None
    st.stop()
data = resp.json()
chat, messages = data["chat"], data["messages"]

st.title(chat["title"])
st.markdown(f"<p class='relay-muted'>Created {format_timestamp(chat['created_at'])}</p>", unsafe_allow_html=True)

with st.expander("System prompt"):
    prompt = st.text_area("System prompt", value=chat.get("system_prompt") or "", height=120, label_visibility="collapsed")
    c1, c2 = st.columns(2)
    with c1:
        if st.button("Save prompt"):
            if api("PATCH", f"/chats/{chat_id}", json={"system_prompt": prompt}) is not None:
                st.success("Saved")
    with c2:
        if st.button("Delete chat", type="secondary"):
            if api("DELETE", f"/chats/{chat_id}") is not None:
                st.session_state["chat_id"] = None
                st.rerun()

for m in messages:
    with st.chat_message(m["role"]):
        st.markdown(m["content"])
        st.caption(format_timestamp(m["created_at"]))

# Any widget interaction while a reply streams reruns the script, which drops the
# connection; the server then closes the reply as cancelled.
if text := st.chat_input("Message"):
    with st.chat_message("user"):
        st.markdown(text)
    with st.chat_message("assistant"):
        placeholder = st.empty()
        st.button("Stop", key="stop_stream")
        try:
            reply = stream_reply(chat_id, text, placeholder)
        except StreamRequestError as exc:
            placeholder.empty()
            st.error(exc.detail)
        else:
            placeholder.markdown(reply.content)
            if not reply.saved:
                st.markdown("<p class='relay-status'>This reply was not saved.</p>", unsafe_allow_html=True)
