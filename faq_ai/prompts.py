from typing import Any, Iterable, List, Optional

from faq_ai.providers.base import Conversation, Message


SYSTEM_PREAMBLE = """You are an AI assistant for Sultan Kudarat State University (SKSU) Student Body Organization.

SKSU Information:
- Vision: "A premier state university in Southeast Asia"
- Mission: Providing quality education, research, and community service
- Location: Tacurong City, Sultan Kudarat, Philippines
- Founded: 1983

You help students with:
- Academic policies and procedures
- Student services and welfare
- University rules and regulations
- Campus life and activities
- General inquiries about SKSU

Guidelines:
- Be helpful, friendly, and professional
- Provide accurate information about SKSU
- If you don't know something, admit it and suggest contacting the appropriate office
- Keep responses concise and clear
- Use a conversational but respectful tone"""

_HISTORY_ROLES = ("user", "assistant")


def normalize_history(history: Optional[Iterable[Any]], limit: int = 20) -> List[Message]:
    """Keep the most recent ``limit`` well-formed user/assistant turns.

    System entries are dropped (the preamble is owned by the server), as are
    entries with unknown roles or empty content.
    """
    out: List[Message] = []
    for item in history or []:
        if not isinstance(item, dict):
            continue
        role = str(item.get("role") or "").strip().lower()
        if role not in _HISTORY_ROLES:
            continue
        content = str(item.get("content") or "").strip()
        if not content:
            continue
        out.append({"role": role, "content": content})
    if limit <= 0:
        return []
    return out[-limit:]


def build_conversation(
    user_message: str,
    history: Optional[Iterable[Any]] = None,
    *,
    preamble: str = SYSTEM_PREAMBLE,
    history_limit: int = 20,
) -> Conversation:
    conversation: Conversation = [{"role": "system", "content": preamble}]
    conversation.extend(normalize_history(history, history_limit))
    conversation.append({"role": "user", "content": (user_message or "").strip()})
    return conversation
