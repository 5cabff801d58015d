from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .answers import AnswerProvider
from .errors import ConfigurationError, SessionNotFoundError
from .render import RenderInvoker, private_temp_file
from .security import normalize_owner_id
from .transcode import MarkdownTranscoder
from .workspace import SessionStore, Turn

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnswerResult:
    session_id: str
    turn: Turn

    @property
    def image_path(self) -> Optional[Path]:
        return self.turn.image_reference


class AnswerPipeline:
    """question -> session -> answer -> styled document -> image -> appended turn."""

    def __init__(
        self,
        store: SessionStore,
        transcoder: MarkdownTranscoder,
        invoker: RenderInvoker,
        answers: Optional[AnswerProvider] = None,
    ) -> None:
        self.store = store
        self.transcoder = transcoder
        self.invoker = invoker
        self.answers = answers

    async def _open_session(self, owner: str, session_id: Optional[str]) -> str:
        if not session_id:
            session = await asyncio.to_thread(self.store.create_session, owner)
            return session.id
        session = await asyncio.to_thread(self.store.get_session, session_id)
        # Someone else's session is indistinguishable from a missing one.
        if session is None or session.owner_id != owner:
            raise SessionNotFoundError(session_id)
        await asyncio.to_thread(self.store.touch, session.id)
        return session.id

    async def _render_and_append(self, session_id: str, question: str, markdown: str) -> AnswerResult:
        document = await asyncio.to_thread(self.transcoder.transcode, markdown)
        with private_temp_file(self.invoker.temp_dir, session_id, ".png") as image_path:
            await self.invoker.render_document(document, image_path, session_id=session_id)
            turn = await asyncio.to_thread(self.store.append_turn, session_id, question, markdown, image_path)
        logger.info("Answered in session %s (turn %d)", session_id, turn.index)
        return AnswerResult(session_id=session_id, turn=turn)

    async def render_answer(
        self,
        owner_id: object,
        question: str,
        markdown: str,
        *,
        session_id: Optional[str] = None,
    ) -> AnswerResult:
        """Run the pipeline for an answer that was produced elsewhere."""
        owner = normalize_owner_id(owner_id)
        sid = await self._open_session(owner, session_id)
        return await self._render_and_append(sid, question, markdown)

    async def ask(
        self,
        owner_id: object,
        question: str,
        *,
        image_urls: Sequence[str] = (),
        session_id: Optional[str] = None,
    ) -> AnswerResult:
        if self.answers is None:
            raise ConfigurationError("No answer provider is configured")
        owner = normalize_owner_id(owner_id)
        sid = await self._open_session(owner, session_id)
        markdown = await self.answers.answer(question, image_urls=image_urls)
        return await self._render_and_append(sid, question, markdown)
