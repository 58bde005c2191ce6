"""Turn log: append-only record of finished turns per session.

A Conversation row is created on a session's first turn; each finished turn
(DELIVERED or FAILED) adds one ConversationTurn. Rows are never updated
after they are written, apart from the Conversation counters.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from discovery.models.errors import NotFoundError, PermissionDeniedError
from discovery.models.messages import AgentTurn, Conversation, ConversationTurn

logger = logging.getLogger(__name__)

_TITLE_CHARS = 60


class TurnLog:
    """SQLModel-backed turn log. Blocking work runs in a worker thread."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def append(self, turn: AgentTurn, user_id: str | None = None) -> AgentTurn:
        """Persist a finished turn, assigning its turn number."""
        return await asyncio.to_thread(self._append, turn, user_id)

    def _append(self, turn: AgentTurn, user_id: str | None) -> AgentTurn:
        with Session(self.engine) as session:
            conv = session.get(Conversation, turn.session_id)
            if conv is None:
                conv = Conversation(
                    id=turn.session_id,
                    user_id=user_id,
                    title=turn.message[:_TITLE_CHARS],
                )
                session.add(conv)

            conv.turn_count += 1
            conv.total_cost += turn.total_cost
            conv.updated_at = datetime.now(timezone.utc)
            turn.turn_number = conv.turn_count

            session.add(ConversationTurn(
                conversation_id=turn.session_id,
                turn_number=turn.turn_number,
                message=turn.message,
                state=turn.state,
                plan=[c.model_dump(mode="json") for c in turn.plan],
                tool_outcomes=[o.model_dump(mode="json") for o in turn.tool_outcomes],
                answer=turn.answer,
                citations=[c.model_dump(mode="json") for c in turn.citations],
                ungrounded_citations=list(turn.ungrounded_citations),
                failure_reason=turn.failure_reason,
                cost=turn.total_cost,
                duration_ms=turn.duration_ms,
                created_at=turn.created_at,
            ))
            session.commit()
        logger.info("Session %s turn %d logged (%s)", turn.session_id, turn.turn_number, turn.state)
        return turn

    async def check_owner(self, session_id: str, user_id: str | None) -> None:
        """Raise PermissionDeniedError if the session belongs to another user."""
        owner = await asyncio.to_thread(self._owner, session_id)
        if owner is not None and owner != user_id:
            raise PermissionDeniedError(f"Session {session_id} belongs to another user")

    def _owner(self, session_id: str) -> str | None:
        with Session(self.engine) as session:
            conv = session.get(Conversation, session_id)
            return conv.user_id if conv else None

    async def history(self, session_id: str, limit: int = 10) -> list[dict]:
        """Last ``limit`` turns as LLM messages, oldest first.

        Failed turns contribute the user message only.
        """
        return await asyncio.to_thread(self._history, session_id, limit)

    def _history(self, session_id: str, limit: int) -> list[dict]:
        with Session(self.engine) as session:
            stmt = (
                select(ConversationTurn)
                .where(ConversationTurn.conversation_id == session_id)
                .order_by(ConversationTurn.turn_number.desc())  # type: ignore[union-attr]
                .limit(limit)
            )
            turns = list(reversed(session.exec(stmt).all()))

        messages = []
        for turn in turns:
            messages.append({"role": "user", "content": turn.message})
            if turn.answer:
                messages.append({"role": "assistant", "content": turn.answer})
        return messages

    async def list_sessions(
        self,
        user_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Conversation]:
        """Sessions, most recently updated first."""
        return await asyncio.to_thread(self._list_sessions, user_id, limit, offset)

    def _list_sessions(self, user_id: str | None, limit: int, offset: int) -> list[Conversation]:
        with Session(self.engine) as session:
            stmt = select(Conversation)
            if user_id is not None:
                stmt = stmt.where(Conversation.user_id == user_id)
            stmt = (
                stmt.order_by(Conversation.updated_at.desc(), Conversation.id)  # type: ignore[union-attr]
                .offset(offset)
                .limit(min(limit, 100))
            )
            return list(session.exec(stmt).all())

    async def get_session(self, session_id: str) -> tuple[Conversation, list[AgentTurn]]:
        return await asyncio.to_thread(self._get_session, session_id)

    def _get_session(self, session_id: str) -> tuple[Conversation, list[AgentTurn]]:
        with Session(self.engine) as session:
            conv = session.get(Conversation, session_id)
            if conv is None:
                raise NotFoundError(f"Session not found: {session_id}")
            stmt = (
                select(ConversationTurn)
                .where(ConversationTurn.conversation_id == session_id)
                .order_by(ConversationTurn.turn_number)  # type: ignore[union-attr]
            )
            turns = [AgentTurn.from_row(row) for row in session.exec(stmt).all()]
            session.expunge(conv)
        return conv, turns
