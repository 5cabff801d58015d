from __future__ import annotations

import asyncio
from typing import Sequence

import pytest

from mdimg_backend.errors import AnswerProviderError, ConfigurationError, SessionNotFoundError
from mdimg_backend.pipeline import AnswerPipeline
from mdimg_backend.render import RenderInvoker
from mdimg_backend.transcode import MarkdownTranscoder
from mdimg_backend.workspace import FileSessionStore


class StaticAnswers:
    def __init__(self, markdown: str = "**bold** reply") -> None:
        self.markdown = markdown
        self.calls = []

    async def answer(self, question: str, *, image_urls: Sequence[str] = ()) -> str:
        self.calls.append((question, tuple(image_urls)))
        return self.markdown


class FailingAnswers:
    async def answer(self, question: str, *, image_urls: Sequence[str] = ()) -> str:
        raise AnswerProviderError("upstream 502")


def _pipeline(tmp_path, renderer, font_file, answers=None):
    store = FileSessionStore(tmp_path / "sessions")
    invoker = RenderInvoker(renderer, tmp_path / "temp")
    return store, AnswerPipeline(store, MarkdownTranscoder(font_file), invoker, answers)


def test_end_to_end_create_append_read(tmp_path, fake_renderer, font_file) -> None:
    store, pipeline = _pipeline(tmp_path, fake_renderer, font_file)

    result = asyncio.run(pipeline.render_answer(42, "hi", "**bold** reply"))

    session = store.get_session(result.session_id)
    assert session.owner_id == "42"
    assert len(session.turns) == 1
    turn = session.turns[0]
    assert turn.input_text == "hi"
    assert turn.response_markdown == "**bold** reply"
    assert turn.image_reference.is_file()
    assert turn.image_reference.stat().st_size > 0
    assert result.image_path == turn.image_reference
    assert "<strong>bold</strong>" in fake_renderer.documents[0]
    assert list((tmp_path / "temp").iterdir()) == []


def test_continuing_a_session_appends_a_turn(tmp_path, fake_renderer, font_file) -> None:
    store, pipeline = _pipeline(tmp_path, fake_renderer, font_file)

    async def scenario():
        first = await pipeline.render_answer("42", "one", "first")
        second = await pipeline.render_answer("42", "two", "second", session_id=first.session_id)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.session_id == second.session_id
    assert second.turn.index == 2
    assert len(store.get_session(first.session_id).turns) == 2


def test_another_owners_session_is_not_found(tmp_path, fake_renderer, font_file) -> None:
    store, pipeline = _pipeline(tmp_path, fake_renderer, font_file)
    mine = store.create_session("42")

    with pytest.raises(SessionNotFoundError):
        asyncio.run(pipeline.render_answer("43", "q", "a", session_id=mine.id))
    assert store.get_session(mine.id).turns == ()


def test_ask_uses_the_answer_provider(tmp_path, fake_renderer, font_file) -> None:
    answers = StaticAnswers("# Answer\n\n这是test混合")
    store, pipeline = _pipeline(tmp_path, fake_renderer, font_file, answers)

    result = asyncio.run(pipeline.ask("42", "what is this?", image_urls=["https://img.example/a.png"]))

    assert answers.calls == [("what is this?", ("https://img.example/a.png",))]
    assert result.turn.response_markdown == "# Answer\n\n这是test混合"
    assert store.get_session(result.session_id).turns[0].input_text == "what is this?"


def test_ask_without_provider_is_a_configuration_error(tmp_path, fake_renderer, font_file) -> None:
    _, pipeline = _pipeline(tmp_path, fake_renderer, font_file)
    with pytest.raises(ConfigurationError):
        asyncio.run(pipeline.ask("42", "q"))


def test_provider_failure_leaves_no_turn_behind(tmp_path, fake_renderer, font_file) -> None:
    store, pipeline = _pipeline(tmp_path, fake_renderer, font_file, FailingAnswers())
    session = store.create_session("42")

    with pytest.raises(AnswerProviderError):
        asyncio.run(pipeline.ask("42", "q", session_id=session.id))

    assert store.get_session(session.id).turns == ()
    assert fake_renderer.documents == []
