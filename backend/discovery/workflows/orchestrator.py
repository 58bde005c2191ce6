"""Orchestrator: runs one conversational turn: plan → execute → synthesize.

Design decisions:
- The planner only proposes; every call is validated here against the tool's
  argument model. Unknown tools, bad arguments and calls over the per-turn
  budget become ``skipped`` outcomes, exact duplicates are dropped
- Planner failure falls back to a single search on the message
- Stage 1 (independent tools) runs concurrently; stage 2 (detectors) runs
  concurrently over the union of experience ids stage 1 surfaced
- A failing, slow or rate-limited call becomes an outcome marker; it never
  fails the turn. Outcomes merge in (stage, tool, index) order
- Planning and execution must finish ``synthesis_reserve`` seconds before the
  turn deadline. Whatever has not finished by then is cancelled and marked
  ``timeout``; the answer streams until the deadline itself and is delivered
  partial if it is cut off
- Answers cite numbered sources. Markers that do not resolve to a source of
  this turn are stripped and reported as ungrounded
- Cancellation ends the turn FAILED with reason ``cancelled``; the turn is
  logged either way
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import AsyncGenerator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from discovery.agents.registry import AgentRegistry
from discovery.agents.tools import (
    DETECTOR_STAGE,
    INDEPENDENT_STAGE,
    ToolContext,
    ToolDefinition,
    ToolRegistry,
)
from discovery.config import settings
from discovery.engines.pattern_service import PatternService
from discovery.engines.retriever import HybridRetriever
from discovery.engines.user_similarity import UserSimilarityEngine
from discovery.llm.layer import END, anext_or_end
from discovery.middleware.rate_limit import FixedWindowLimiter
from discovery.models.errors import (
    DiscoveryError,
    InvalidRequestError,
    PermissionDeniedError,
    RateLimitExceededError,
    TurnCancelledError,
    UpstreamUnavailableError,
)
from discovery.models.experience import VisibilityScope
from discovery.models.messages import (
    AgentTurn,
    Citation,
    ContextPackage,
    ToolCall,
    ToolOutcome,
)
from discovery.sessions.registry import CancellationToken, SessionRegistry
from discovery.sessions.turn_log import TurnLog
from discovery.store.experience_store import ExperienceStore
from discovery.workflows.engine import TurnEngine

logger = logging.getLogger(__name__)

SEARCH_TOOL = "search_experiences"
MAX_SOURCES = 30
SNIPPET_CHARS = 200
ANSWER_DEADLINE_NOTE = "The answer was cut off at the turn time limit."
ANSWER_BROKEN_NOTE = "The answer was cut off because the model stream failed."

_CITATION_PATTERN = re.compile(r"\[(\d+)\]")
_SPACE_BEFORE_PUNCT = re.compile(r"[ \t]+([.,;:!?])")
_DOUBLE_SPACE = re.compile(r"[ \t]{2,}")


@dataclass
class TurnEvent:
    """One item of a turn's event stream (maps 1:1 to an SSE event)."""

    event: str  # state | plan | tool | token | done | error
    data: dict[str, Any] = field(default_factory=dict)
    turn: AgentTurn | None = None  # set on done / error


@dataclass
class _PlannedCall:
    call: ToolCall
    tool: ToolDefinition
    args: BaseModel


def _call_key(call: ToolCall) -> str:
    return f"{call.tool}:{json.dumps(call.arguments, sort_keys=True, default=str)}"


def _merge_key(outcome: ToolOutcome) -> tuple[int, str, int]:
    return (outcome.stage, outcome.tool, outcome.index)


def validate_citations(answer: str, sources: list[dict]) -> tuple[str, list[Citation], list[str]]:
    """Keep ``[n]`` markers that resolve to a source; strip and report the rest.

    Returns (cleaned answer, citations in marker order, ungrounded markers).
    """
    by_marker = {s["marker"]: s for s in sources}
    cited: set[int] = set()
    ungrounded: list[str] = []

    def _resolve(match: re.Match) -> str:
        marker = int(match.group(1))
        if marker in by_marker:
            cited.add(marker)
            return match.group(0)
        if match.group(0) not in ungrounded:
            ungrounded.append(match.group(0))
        return ""

    cleaned = _CITATION_PATTERN.sub(_resolve, answer)
    if ungrounded:
        cleaned = _DOUBLE_SPACE.sub(" ", _SPACE_BEFORE_PUNCT.sub(r"\1", cleaned))

    citations = [
        Citation(
            marker=n,
            experience_id=by_marker[n]["experience_id"],
            tool=by_marker[n]["tool"],
            snippet=by_marker[n]["snippet"],
        )
        for n in sorted(cited)
    ]
    return cleaned, citations, ungrounded


def incomplete_note(outcomes: list[ToolOutcome]) -> str:
    """Deterministic note listing analyses that did not complete ("" if none)."""
    failed = [f"{o.tool} ({o.status})" for o in outcomes if not o.completed]
    if not failed:
        return ""
    return "Could not complete: " + ", ".join(failed) + "."


class Orchestrator:
    """Runs turns for sessions. One instance serves the whole app."""

    def __init__(
        self,
        agents: AgentRegistry,
        tools: ToolRegistry,
        retriever: HybridRetriever,
        patterns: PatternService,
        similarity: UserSimilarityEngine,
        store: ExperienceStore,
        turn_log: TurnLog,
        sessions: SessionRegistry | None = None,
        tool_limiter: FixedWindowLimiter | None = None,
        max_tool_calls: int | None = None,
        tool_timeout: float | None = None,
        turn_timeout: float | None = None,
        synthesis_reserve: float | None = None,
        history_turns: int | None = None,
    ) -> None:
        self.agents = agents
        self.tools = tools
        self.retriever = retriever
        self.patterns = patterns
        self.similarity = similarity
        self.store = store
        self.turn_log = turn_log
        self.sessions = sessions or SessionRegistry()
        self.tool_limiter = tool_limiter or FixedWindowLimiter(
            settings.tool_rate_limit_requests, settings.rate_limit_window_seconds
        )
        self.max_tool_calls = max_tool_calls or settings.max_tool_calls_per_turn
        self.tool_timeout = tool_timeout or settings.tool_call_timeout_seconds
        self.turn_timeout = turn_timeout or settings.turn_timeout_seconds
        self.synthesis_reserve = synthesis_reserve or settings.synthesis_reserve_seconds
        self.history_turns = history_turns or settings.history_turns
        self.engine = TurnEngine()

    # === Entry points ===

    async def converse(
        self,
        session_id: str,
        message: str,
        user_id: str | None = None,
        locale: str = "en",
    ) -> AgentTurn:
        """Run a turn to completion and return it."""
        message = await self.prepare(session_id, message, user_id)
        final: AgentTurn | None = None
        async for event in self.converse_stream(session_id, message, user_id, locale):
            if event.turn is not None:
                final = event.turn
        if final is None:
            raise RuntimeError(f"Turn for session {session_id} ended without a result")
        return final

    async def prepare(self, session_id: str, message: str, user_id: str | None) -> str:
        """Validate a turn request before any work starts. Returns the cleaned message."""
        message = (message or "").strip()
        if not message:
            raise InvalidRequestError("message must not be empty")
        await self.turn_log.check_owner(session_id, user_id)
        return message

    async def converse_stream(
        self,
        session_id: str,
        message: str,
        user_id: str | None = None,
        locale: str = "en",
    ) -> AsyncGenerator[TurnEvent, None]:
        """Run a turn, yielding progress events. The last event is done or error.

        Call prepare() first; request errors surface from it rather than
        from inside the stream.
        """
        async with self.sessions.turn(session_id, owner=user_id) as token:
            turn = AgentTurn(session_id=session_id, message=message.strip())
            start = time.time()
            yield self._state_event(turn)
            try:
                async for event in self._run(turn, token, user_id, locale):
                    yield event
            except TurnCancelledError:
                logger.info("Turn cancelled in %s for session %s", turn.state, session_id)
                self.engine.fail(turn, "cancelled")
            except DiscoveryError as e:
                logger.warning("Turn failed in %s for session %s: %s", turn.state, session_id, e.message)
                self.engine.fail(turn, e.message)
            except asyncio.CancelledError:
                # caller went away (client disconnect); record the turn before unwinding
                self.engine.fail(turn, "cancelled")
                turn.duration_ms = int((time.time() - start) * 1000)
                await asyncio.shield(self.turn_log.append(turn, user_id))
                raise

            turn.duration_ms = int((time.time() - start) * 1000)
            await self.turn_log.append(turn, user_id)
            if turn.state == "DELIVERED":
                yield TurnEvent("done", turn.model_dump(mode="json"), turn=turn)
            else:
                yield TurnEvent(
                    "error",
                    {"detail": turn.failure_reason, "turn": turn.model_dump(mode="json")},
                    turn=turn,
                )

    async def cancel(self, session_id: str, user_id: str | None = None) -> bool:
        """Cancel the session's running turn on behalf of ``user_id``. False if none is running."""
        await self.turn_log.check_owner(session_id, user_id)
        token = self.sessions.active_token(session_id)
        if token is not None and token.owner != user_id:
            raise PermissionDeniedError(f"Session {session_id} belongs to another user")
        return self.sessions.cancel(session_id)

    # === Turn pipeline ===

    def _state_event(self, turn: AgentTurn) -> TurnEvent:
        return TurnEvent("state", {"state": turn.state, "session_id": turn.session_id})

    async def _run(
        self,
        turn: AgentTurn,
        token: CancellationToken,
        user_id: str | None,
        locale: str,
    ) -> AsyncGenerator[TurnEvent, None]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.turn_timeout
        work_deadline = deadline - min(self.synthesis_reserve, self.turn_timeout / 2)
        history = await self.turn_log.history(turn.session_id, self.history_turns)

        # Planning
        token.raise_if_cancelled()
        self.engine.transition(turn, "PLANNING")
        yield self._state_event(turn)
        proposed = await self._plan(turn, history, work_deadline)
        token.raise_if_cancelled()
        planned, skipped = self._validate_plan(proposed, turn.message)
        turn.plan = [p.call for p in planned]
        yield TurnEvent("plan", {
            "calls": [c.model_dump(mode="json") for c in turn.plan],
            "skipped": [o.model_dump(mode="json") for o in skipped],
        })

        # Executing
        self.engine.transition(turn, "EXECUTING")
        yield self._state_event(turn)
        ctx = ToolContext(
            retriever=self.retriever,
            patterns=self.patterns,
            similarity=self.similarity,
            viewer_id=user_id,
            locale=locale,
        )
        outcomes = list(skipped)
        for stage in (INDEPENDENT_STAGE, DETECTOR_STAGE):
            stage_calls = [p for p in planned if p.tool.stage == stage]
            if not stage_calls:
                continue
            token.raise_if_cancelled()
            results = await self._run_stage(stage_calls, ctx, token, work_deadline)
            results.sort(key=_merge_key)
            outcomes.extend(results)
            turn.tool_outcomes = sorted(outcomes, key=_merge_key)
            token.raise_if_cancelled()
            for outcome in results:
                yield TurnEvent("tool", outcome.model_dump(mode="json"))
            if stage == INDEPENDENT_STAGE:
                ids: list[str] = []
                for o in results:
                    if o.completed:
                        ids.extend(o.experience_ids)
                ctx.candidate_ids = list(dict.fromkeys(ids))
        outcomes.sort(key=_merge_key)
        turn.tool_outcomes = outcomes
        turn.incomplete_analyses = [o.tool for o in outcomes if not o.completed]

        # Synthesizing
        self.engine.transition(turn, "SYNTHESIZING")
        yield self._state_event(turn)
        sources = await self._build_sources(outcomes, user_id)
        async for event in self._synthesize(turn, history, sources, token, deadline):
            yield event

        self.engine.deliver(turn)
        yield self._state_event(turn)

    async def _plan(self, turn: AgentTurn, history: list[dict], deadline: float) -> list[ToolCall]:
        fallback = [ToolCall(tool=SEARCH_TOOL, arguments={"query": turn.message})]
        planner = self.agents.get("planner")
        if planner is None or not self.agents.is_available("planner"):
            logger.warning("Planner unavailable; using fallback plan")
            return fallback

        context = ContextPackage(
            task_description=turn.message,
            history=history,
            constraints={"max_tool_calls": self.max_tool_calls},
        )
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            output = await asyncio.wait_for(planner.execute(context), timeout=max(remaining, 0.0))
        except asyncio.TimeoutError:
            logger.warning("Planner timed out; using fallback plan")
            return fallback
        turn.total_cost += output.cost
        if not output.is_success:
            logger.warning("Planner failed (%s); using fallback plan", output.error)
            return fallback
        return [ToolCall(**c) for c in output.output or []]

    def _validate_plan(self, proposed: list[ToolCall], message: str) -> tuple[list[_PlannedCall], list[ToolOutcome]]:
        """Dedupe, validate and budget the proposed calls."""
        planned: list[_PlannedCall] = []
        skipped: list[ToolOutcome] = []
        seen: set[str] = set()

        for call in sorted(proposed, key=lambda c: c.index):
            key = _call_key(call)
            if key in seen:
                logger.info("Dropping duplicate tool call %s", call.tool)
                continue
            seen.add(key)

            tool = self.tools.get(call.tool)
            stage = tool.stage if tool else 0
            try:
                tool, args = self.tools.validate(call)
            except InvalidRequestError as e:
                logger.warning("Skipping tool call: %s", e.message)
                skipped.append(self._skip(call, stage, e.message))
                continue
            if len(planned) >= self.max_tool_calls:
                skipped.append(self._skip(call, stage, f"Over the budget of {self.max_tool_calls} tool calls"))
                continue
            planned.append(_PlannedCall(call=call, tool=tool, args=args))

        needs_search = not any(p.call.tool == SEARCH_TOOL for p in planned)
        detectors = [p for p in planned if p.tool.stage == DETECTOR_STAGE]
        if detectors and needs_search and len(planned) >= self.max_tool_calls:
            # the implicit search counts against the budget; give it the last detector's slot
            dropped = detectors.pop()
            planned.remove(dropped)
            skipped.append(self._skip(
                dropped.call, dropped.tool.stage, f"Over the budget of {self.max_tool_calls} tool calls"
            ))
        if detectors and needs_search:
            call = ToolCall(
                tool=SEARCH_TOOL,
                arguments={"query": message},
                index=max((c.index for c in proposed), default=-1) + 1,
            )
            tool, args = self.tools.validate(call)
            planned.append(_PlannedCall(call=call, tool=tool, args=args))
            logger.info("Added implicit search for detector-only plan")

        return planned, skipped

    @staticmethod
    def _skip(call: ToolCall, stage: int, reason: str) -> ToolOutcome:
        return ToolOutcome(
            call_id=call.call_id,
            tool=call.tool,
            arguments=call.arguments,
            status="skipped",
            stage=stage,
            index=call.index,
            error=reason,
        )

    async def _run_stage(
        self,
        calls: list[_PlannedCall],
        ctx: ToolContext,
        token: CancellationToken,
        deadline: float,
    ) -> list[ToolOutcome]:
        """Run one stage's calls concurrently until done, cancelled or past the deadline."""
        loop = asyncio.get_running_loop()
        tasks = {asyncio.ensure_future(self._invoke(p, ctx, token)): p for p in calls}
        pending = set(tasks)
        waiter = asyncio.ensure_future(token.wait())
        try:
            while pending and not token.cancelled:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, _ = await asyncio.wait(
                    pending | {waiter}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                pending -= done
        finally:
            waiter.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        outcomes = []
        for task, p in tasks.items():
            if task in pending:
                status = "cancelled" if token.cancelled else "timeout"
                if status == "timeout":
                    logger.warning("Tool %s cut off by the turn deadline", p.call.tool)
                outcomes.append(self._outcome(p, status, error=f"Not finished ({status})"))
            else:
                outcomes.append(task.result())
        return outcomes

    def _outcome(self, p: _PlannedCall, status: str, **kwargs: Any) -> ToolOutcome:
        return ToolOutcome(
            call_id=p.call.call_id,
            tool=p.call.tool,
            arguments=p.call.arguments,
            status=status,  # type: ignore[arg-type]
            stage=p.tool.stage,
            index=p.call.index,
            **kwargs,
        )

    async def _invoke(self, p: _PlannedCall, ctx: ToolContext, token: CancellationToken) -> ToolOutcome:
        """Run a single tool call. Never raises; failures become outcome markers."""
        if token.cancelled:
            return self._outcome(p, "cancelled")
        start = time.time()
        try:
            self.tool_limiter.check(f"user:{ctx.viewer_id or 'anonymous'}")
            result = await asyncio.wait_for(p.tool.handler(p.args, ctx), timeout=self.tool_timeout)
        except RateLimitExceededError as e:
            logger.warning("Tool %s rate limited for %s", p.call.tool, ctx.viewer_id)
            return self._outcome(p, "rate_limited", error=e.message)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %.1fs", p.call.tool, self.tool_timeout)
            return self._outcome(p, "timeout", error=f"Timed out after {self.tool_timeout:g}s")
        except DiscoveryError as e:
            logger.warning("Tool %s failed: %s", p.call.tool, e.message)
            return self._outcome(p, "error", error=e.message)
        except Exception as e:
            logger.exception("Tool %s raised unexpectedly", p.call.tool)
            return self._outcome(p, "error", error=f"{type(e).__name__}: {e}")
        return self._outcome(
            p,
            "ok",
            output=result.output,
            experience_ids=result.experience_ids,
            duration_ms=int((time.time() - start) * 1000),
        )

    async def _build_sources(self, outcomes: list[ToolOutcome], viewer_id: str | None) -> list[dict]:
        """Number the experiences surfaced by completed calls, in outcome order."""
        first_tool: dict[str, str] = {}
        for o in outcomes:
            if not o.completed:
                continue
            for exp_id in o.experience_ids:
                first_tool.setdefault(exp_id, o.tool)
        ids = list(first_tool)[:MAX_SOURCES]
        if not ids:
            return []
        found = await self.store.get_many(ids, VisibilityScope(viewer_id=viewer_id))
        sources = []
        for exp_id in ids:
            exp = found.get(exp_id)
            if exp is None:
                continue
            sources.append({
                "marker": len(sources) + 1,
                "experience_id": exp.id,
                "tool": first_tool[exp_id],
                "title": exp.title,
                "category": exp.category,
                "snippet": exp.narrative[:SNIPPET_CHARS],
            })
        return sources

    async def _synthesize(
        self,
        turn: AgentTurn,
        history: list[dict],
        sources: list[dict],
        token: CancellationToken,
        deadline: float,
    ) -> AsyncGenerator[TurnEvent, None]:
        """Stream the answer until it ends, the turn is cancelled or the deadline passes.

        Past the deadline, or when the model stream breaks after some text
        arrived, the partial answer is delivered with a cut-off note.
        """
        synthesizer = self.agents.get_or_raise("synthesizer")
        context = ContextPackage(
            task_description=turn.message,
            history=history,
            prior_step_outputs=[o.model_dump(mode="json") for o in turn.tool_outcomes],
            metadata={"sources": sources, "incomplete_analyses": turn.incomplete_analyses},
        )

        loop = asyncio.get_running_loop()
        parts: list[str] = []
        cut_off = ""
        try:
            async with aclosing(synthesizer.stream(context)) as stream:
                while True:
                    token.raise_if_cancelled()
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    item = await asyncio.wait_for(anext_or_end(stream), timeout=remaining)
                    if item is END:
                        break
                    chunk, meta = item
                    if meta is not None:
                        turn.total_cost += meta.cost
                        continue
                    parts.append(chunk)
                    yield TurnEvent("token", {"text": chunk})
        except asyncio.TimeoutError:
            logger.warning("Answer for session %s cut off by the turn deadline", turn.session_id)
            cut_off = ANSWER_DEADLINE_NOTE
        except UpstreamUnavailableError as e:
            if not parts:
                raise
            logger.warning("Answer stream for session %s broke after %d chunks: %s",
                           turn.session_id, len(parts), e.message)
            cut_off = ANSWER_BROKEN_NOTE
        except DiscoveryError:
            raise
        except Exception as e:
            logger.error("Synthesizer failed for session %s: %s", turn.session_id, e)
            raise UpstreamUnavailableError(f"Answer synthesis failed: {type(e).__name__}") from e

        answer, citations, ungrounded = validate_citations("".join(parts), sources)
        if ungrounded:
            logger.warning("Stripped ungrounded citations %s in session %s", ungrounded, turn.session_id)
        notes = [n for n in (cut_off, incomplete_note(turn.tool_outcomes)) if n]
        if notes:
            body = answer.rstrip()
            answer = "\n\n".join([body, *notes] if body else notes)
        turn.answer = answer
        turn.citations = citations
        turn.ungrounded_citations = ungrounded
