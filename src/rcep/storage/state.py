"""
Key-value style persistence of capture state, one logical space per tab key.

Writes are best-effort: a failed write is logged and reported as False, it
never aborts a capture job. A failed read raises STORAGE_READ_FAILED.
"""
import json
from typing import Any, Dict, List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from rcep.config import settings
from rcep.messages import Message, now_ms
from rcep.models.capture import (
    ConversationState, StoredMessage, SessionIndexEntry, SnapshotSlot, ProgressRecord, Role,
)
from rcep.errors import RELOAD_HINT, STORAGE_READ_FAILED, CaptureError
from rcep.logging import logger


def is_progress_stale(record: Optional[Dict[str, Any]], now: Optional[int] = None) -> bool:
    """A progress record older than PROGRESS_STALE_MS means the job died."""
    if not record:
        return True
    updated = record.get("updatedAt")
    if not isinstance(updated, (int, float)):
        return True
    now = now_ms() if now is None else now
    return now - updated > settings.PROGRESS_STALE_MS


class StateStore:
    def __init__(self, engine=None):
        if engine is None:
            from rcep.db import engine as default_engine
            engine = default_engine
        self.engine = engine

    # -----------------------------------------------------------------------
    # Conversation / session
    # -----------------------------------------------------------------------
    def get_conversation(self, tab_key: str) -> Optional[ConversationState]:
        with Session(self.engine) as session:
            return session.exec(
                select(ConversationState).where(ConversationState.tab_key == tab_key)
            ).first()

    def set_conversation(self, tab_key: str, conversation_id: str, session_id: Optional[str]):
        with Session(self.engine) as session:
            state = session.exec(
                select(ConversationState).where(ConversationState.tab_key == tab_key)
            ).first()
            if state is None:
                state = ConversationState(tab_key=tab_key)
            state.conversation_id = conversation_id
            state.session_id = session_id
            session.add(state)
            session.commit()

    def reset_session(self, tab_key: str, conversation_id: str, session_id: str) -> List[str]:
        """Point the tab at a fresh session, drop its stored messages, update the ring."""
        with Session(self.engine) as session:
            for row in session.exec(select(StoredMessage).where(StoredMessage.tab_key == tab_key)).all():
                session.delete(row)
            session.commit()
        self.set_conversation(tab_key, conversation_id, session_id)
        return self.remember_session(tab_key, session_id)

    def remember_session(self, tab_key: str, session_id: str) -> List[str]:
        """Most recent first, deduped, trimmed; messages of evicted sessions are deleted."""
        with Session(self.engine) as session:
            rows = session.exec(
                select(SessionIndexEntry)
                .where(SessionIndexEntry.tab_key == tab_key)
                .order_by(SessionIndexEntry.position)
            ).all()
            ordered = [session_id] + [r.session_id for r in rows if r.session_id != session_id]
            keep = ordered[: settings.MAX_SESSIONS_TO_KEEP]
            evicted = ordered[settings.MAX_SESSIONS_TO_KEEP:]

            for row in rows:
                session.delete(row)
            for position, sid in enumerate(keep):
                session.add(SessionIndexEntry(tab_key=tab_key, session_id=sid, position=position))
            if evicted:
                stale = session.exec(select(StoredMessage).where(StoredMessage.session_id.in_(evicted))).all()
                for row in stale:
                    session.delete(row)
                logger.info(f"Evicted {len(evicted)} old sessions ({len(stale)} stored messages)")
            session.commit()
        return keep

    def recent_sessions(self, tab_key: str) -> List[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SessionIndexEntry)
                .where(SessionIndexEntry.tab_key == tab_key)
                .order_by(SessionIndexEntry.position)
            ).all()
            return [r.session_id for r in rows]

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------
    def save_messages(self, tab_key: str, session_id: str, messages: List[Message]) -> bool:
        """
        Replace the stored copy of a session's messages. Above
        MAX_STORAGE_MESSAGE_CHARS only the last STORAGE_TAIL_MESSAGES are kept.
        """
        total = sum(len(m.content or "") for m in messages)
        to_store = messages
        if total > settings.MAX_STORAGE_MESSAGE_CHARS:
            to_store = messages[-settings.STORAGE_TAIL_MESSAGES:]
            logger.warning(
                f"Storage budget exceeded ({total} chars); persisting last {len(to_store)} of {len(messages)} messages"
            )
        try:
            with Session(self.engine) as session:
                for row in session.exec(select(StoredMessage).where(StoredMessage.session_id == session_id)).all():
                    session.delete(row)
                session.flush()
                for seq, msg in enumerate(to_store):
                    session.add(StoredMessage(
                        tab_key=tab_key,
                        session_id=session_id,
                        seq=seq,
                        message_id=msg.id,
                        role=Role(msg.role),
                        content=msg.content,
                        timestamp=msg.timestamp,
                        source=msg.source,
                        source_url=msg.source_url,
                        captured_at=msg.captured_at,
                    ))
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist {len(to_store)} messages for {session_id}: {e}")
            return False
        return True

    def load_messages(self, session_id: str) -> List[Message]:
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(StoredMessage).where(StoredMessage.session_id == session_id).order_by(StoredMessage.seq)
                ).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to read stored messages for {session_id}: {e}")
            raise CaptureError(STORAGE_READ_FAILED, f"Could not read stored messages: {e}", RELOAD_HINT) from e
        return [
            Message(
                id=r.message_id,
                role=r.role.value if isinstance(r.role, Role) else str(r.role),
                content=r.content,
                session_id=r.session_id,
                timestamp=r.timestamp,
                source=r.source,
                captured_at=r.captured_at,
                source_url=r.source_url,
            )
            for r in rows
        ]

    # -----------------------------------------------------------------------
    # Last snapshot
    # -----------------------------------------------------------------------
    def save_last_snapshot(self, tab_key: str, snapshot: Dict[str, Any], serialized: Optional[str] = None) -> bool:
        """Returns False (artifact stays in memory only) when it exceeds LAST_SNAPSHOT_MAX_CHARS."""
        text = serialized if serialized is not None else json.dumps(snapshot, ensure_ascii=False)
        if len(text) > settings.LAST_SNAPSHOT_MAX_CHARS:
            logger.warning(f"Snapshot too large to persist ({len(text)} chars); keeping it in memory only")
            return False
        try:
            with Session(self.engine) as session:
                slot = session.exec(select(SnapshotSlot).where(SnapshotSlot.tab_key == tab_key)).first()
                if slot is None:
                    slot = SnapshotSlot(tab_key=tab_key, snapshot_json=text)
                slot.snapshot_json = text
                slot.session_id = snapshot.get("session_id")
                slot.protocol = snapshot.get("protocol")
                slot.checksum = snapshot.get("checksum")
                session.add(slot)
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist last snapshot: {e}")
            return False
        return True

    def load_last_snapshot(self, tab_key: str) -> Optional[Dict[str, Any]]:
        try:
            with Session(self.engine) as session:
                slot = session.exec(select(SnapshotSlot).where(SnapshotSlot.tab_key == tab_key)).first()
                return slot.get_snapshot() if slot else None
        except (SQLAlchemyError, ValueError) as e:
            logger.error(f"Failed to read last snapshot: {e}")
            raise CaptureError(STORAGE_READ_FAILED, f"Could not read the last snapshot: {e}", RELOAD_HINT) from e

    # -----------------------------------------------------------------------
    # Progress
    # -----------------------------------------------------------------------
    def write_progress(self, tab_key: str, record: Dict[str, Any]) -> bool:
        try:
            with Session(self.engine) as session:
                row = session.exec(select(ProgressRecord).where(ProgressRecord.tab_key == tab_key)).first()
                if row is None:
                    row = ProgressRecord(tab_key=tab_key)
                row.set_record(record)
                row.updated_at_ms = int(record.get("updatedAt") or now_ms())
                session.add(row)
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to write progress: {e}")
            return False
        return True

    def read_progress(self, tab_key: str) -> Optional[Dict[str, Any]]:
        try:
            with Session(self.engine) as session:
                row = session.exec(select(ProgressRecord).where(ProgressRecord.tab_key == tab_key)).first()
                return row.get_record() if row else None
        except (SQLAlchemyError, ValueError) as e:
            logger.error(f"Failed to read progress: {e}")
            raise CaptureError(STORAGE_READ_FAILED, f"Could not read capture progress: {e}", RELOAD_HINT) from e

    def clear_progress(self, tab_key: str):
        with Session(self.engine) as session:
            row = session.exec(select(ProgressRecord).where(ProgressRecord.tab_key == tab_key)).first()
            if row is not None:
                session.delete(row)
                session.commit()
