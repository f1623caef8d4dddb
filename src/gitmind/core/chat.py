"""Chat history for a session and assistant replies from the generator."""

import json
import sqlite3

from gitmind.core.sessions import require_session
from gitmind.db.models import ChatMessage, parse_dt
from gitmind.errors import NotFound
from gitmind.integrations.generator import Generator

CHAT_SYSTEM_PROMPT = """You are GitMind AI, an expert code assistant. You analyze codebases and help developers understand and modify their code.

Rules:
- Be concise and technical
- Reference specific files and line numbers when relevant
- Suggest concrete improvements
- If file context is provided, use it to give accurate answers"""

EMPTY_REPLY = "No response from AI."


def save_message(
    db: sqlite3.Connection,
    session_id: str,
    role: str,
    content: str,
    file_context: dict | None = None,
) -> ChatMessage:
    require_session(db, session_id)
    if role not in ("user", "assistant"):
        raise ValueError(f"Unknown chat role: {role}")

    cur = db.execute(
        "INSERT INTO chat_messages (session_id, role, content, file_context) VALUES (?, ?, ?, ?)",
        (session_id, role, content, json.dumps(file_context) if file_context else None),
    )
    db.commit()
    row = db.execute("SELECT * FROM chat_messages WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_message(row)


def get_messages(db: sqlite3.Connection, session_id: str) -> list[ChatMessage]:
    """Get a session's chat history, oldest first."""
    rows = db.execute(
        "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY id ASC",
        (session_id,),
    ).fetchall()
    return [_row_to_message(r) for r in rows]


def revert_to_message(db: sqlite3.Connection, session_id: str, message_id: int) -> list[ChatMessage]:
    """Drop every message after ``message_id`` and return the remaining history."""
    row = db.execute(
        "SELECT id FROM chat_messages WHERE id = ? AND session_id = ?",
        (message_id, session_id),
    ).fetchone()
    if not row:
        raise NotFound(f"Message {message_id} not found in session {session_id}", message_id=message_id)

    db.execute(
        "DELETE FROM chat_messages WHERE session_id = ? AND id > ?",
        (session_id, message_id),
    )
    db.commit()
    return get_messages(db, session_id)


def build_chat_prompt(file_context: dict | None = None) -> str:
    if not file_context:
        return CHAT_SYSTEM_PROMPT
    context = "\n\n".join(f"--- {path} ---\n{content}" for path, content in file_context.items())
    return f"{CHAT_SYSTEM_PROMPT}\n\nCurrent file context:\n{context}"


def reply(
    db: sqlite3.Connection,
    generator: Generator,
    session_id: str,
    content: str,
    file_context: dict | None = None,
) -> ChatMessage:
    """Store a user message, ask the generator with the full history, store the answer."""
    save_message(db, session_id, "user", content, file_context)
    history = [{"role": m.role, "content": m.content} for m in get_messages(db, session_id)]
    answer = generator.chat(history, build_chat_prompt(file_context))
    return save_message(db, session_id, "assistant", answer or EMPTY_REPLY)


def _row_to_message(row: sqlite3.Row) -> ChatMessage:
    return ChatMessage(
        id=row["id"],
        session_id=row["session_id"],
        role=row["role"],
        content=row["content"],
        file_context=json.loads(row["file_context"]) if row["file_context"] else None,
        created_at=parse_dt(row["created_at"]),
    )
