"""Tests for streaming chat orchestration."""

import asyncio

import pytest

from adapters.ai.llama_cpp import LlamaCppEngine
from core.errors import EngineBusyError, EngineStateError
from core.interfaces import (
    ConversationTurn,
    EnginePhase,
    IHistoryProvider,
    IReplySink,
    Role,
)
from core.prompt_codec import DEFAULT_SYSTEM_PROMPT, PromptCodec
from services.chat_session import ChatSession


class MemoryHistory(IHistoryProvider):
    def __init__(self, conversations: dict[str, list[ConversationTurn]]):
        self.conversations = conversations

    async def get_history(self, conversation_id: str) -> list[ConversationTurn]:
        return list(self.conversations.get(conversation_id, []))


class MemorySink(IReplySink):
    def __init__(self):
        self.replies: list[tuple[str, str]] = []

    async def append_reply(self, conversation_id: str, content: str) -> None:
        self.replies.append((conversation_id, content))


async def loaded_engine(store, gguf_file, fake_loader, **options) -> LlamaCppEngine:
    fake_loader.options.update(options)
    engine = LlamaCppEngine(store=store, loader=fake_loader)
    await engine.load(str(gguf_file))
    return engine


async def collect(chunks):
    return [chunk async for chunk in chunks]


HISTORY = [ConversationTurn(role=Role.USER, content="Hi")]


@pytest.mark.asyncio
async def test_streams_deltas(ready_engine, fake_loader):
    session = ChatSession(ready_engine)

    chunks = await collect(session.respond(HISTORY))

    assert [c.content for c in chunks[:-1]] == ["Hello", " there", "!"]
    final = chunks[-1]
    assert final.finish_reason == "stop"
    assert final.full_text == "Hello there!"
    assert final.error is None
    assert all(c.finish_reason is None for c in chunks[:-1])
    assert ready_engine.state.phase == EnginePhase.READY

    prompt = fake_loader.created[0].calls[0]["prompt"]
    assert prompt == PromptCodec().encode(HISTORY)


@pytest.mark.asyncio
async def test_split_markers_never_reach_caller(store, gguf_file, fake_loader):
    engine = await loaded_engine(
        store, gguf_file, fake_loader,
        pieces=("Hel", "lo<|im_", "start|>assistant\n", " world"),
    )
    session = ChatSession(engine)

    chunks = await collect(session.respond(HISTORY))

    assert all("<|" not in c.content and "|>" not in c.content for c in chunks)
    assert "".join(c.content for c in chunks) == "Hello world"
    assert chunks[-1].full_text == "Hello world"
    await engine.dispose()


@pytest.mark.asyncio
async def test_angle_bracket_text_is_released(store, gguf_file, fake_loader):
    engine = await loaded_engine(store, gguf_file, fake_loader, pieces=("3 <", " 5"))
    session = ChatSession(engine)

    chunks = await collect(session.respond(HISTORY))

    assert [c.content for c in chunks] == ["3 ", "< 5", ""]
    assert chunks[-1].full_text == "3 < 5"
    await engine.dispose()


@pytest.mark.asyncio
async def test_final_reply_is_stripped(store, gguf_file, fake_loader):
    engine = await loaded_engine(store, gguf_file, fake_loader, pieces=("\n", "Ahoy!", " \n"))
    session = ChatSession(engine)

    chunks = await collect(session.respond(HISTORY))

    assert chunks[-1].full_text == "Ahoy!"
    await engine.dispose()


@pytest.mark.asyncio
async def test_error_mid_stream(store, gguf_file, fake_loader):
    engine = await loaded_engine(store, gguf_file, fake_loader, fail_at=1)
    session = ChatSession(engine)

    chunks = await collect(session.respond(HISTORY))

    assert chunks[0].content == "Hello"
    final = chunks[-1]
    assert final.finish_reason == "error"
    assert "decode failed" in final.error
    assert final.full_text == "Hello [generation interrupted]"
    assert engine.state.phase == EnginePhase.READY
    await engine.dispose()


@pytest.mark.asyncio
async def test_consumer_stops_early(ready_engine):
    session = ChatSession(ready_engine)

    replies = session.respond(HISTORY)
    first = await replies.__anext__()
    await replies.aclose()

    assert first.content == "Hello"
    assert ready_engine.state.phase == EnginePhase.READY


@pytest.mark.asyncio
async def test_requires_loaded_model(engine):
    session = ChatSession(engine)

    with pytest.raises(EngineStateError):
        await collect(session.respond(HISTORY))


@pytest.mark.asyncio
async def test_engine_busy_elsewhere(ready_engine):
    other = ready_engine.generate_stream("someone else")
    session = ChatSession(ready_engine)

    with pytest.raises(EngineBusyError):
        await collect(session.respond(HISTORY))

    await other.aclose()


@pytest.mark.asyncio
async def test_calls_are_queued(ready_engine):
    session = ChatSession(ready_engine)

    first, second = await asyncio.gather(
        collect(session.respond(HISTORY)),
        collect(session.respond(HISTORY)),
    )

    assert first[-1].full_text == "Hello there!"
    assert second[-1].full_text == "Hello there!"


@pytest.mark.asyncio
async def test_respond_to_stores_reply(ready_engine, fake_loader):
    history = MemoryHistory({
        "c1": [
            ConversationTurn(role=Role.SYSTEM, content="Stored system note"),
            ConversationTurn(role=Role.USER, content="Best port in Greece?"),
        ],
    })
    sink = MemorySink()
    session = ChatSession(ready_engine, history_provider=history, reply_sink=sink)

    chunks = await collect(session.respond_to("c1"))

    assert chunks[-1].full_text == "Hello there!"
    assert sink.replies == [("c1", "Hello there!")]
    prompt = fake_loader.created[0].calls[0]["prompt"]
    assert "Stored system note" not in prompt
    assert prompt.count("<|im_start|>system\n") == 1
    assert DEFAULT_SYSTEM_PROMPT in prompt
    assert "Best port in Greece?" in prompt


@pytest.mark.asyncio
async def test_respond_to_skips_failed_reply(store, gguf_file, fake_loader):
    engine = await loaded_engine(store, gguf_file, fake_loader, fail_at=0)
    history = MemoryHistory({"c1": [ConversationTurn(role=Role.USER, content="Hi")]})
    sink = MemorySink()
    session = ChatSession(engine, history_provider=history, reply_sink=sink)

    chunks = await collect(session.respond_to("c1"))

    assert chunks[-1].finish_reason == "error"
    assert sink.replies == []
    await engine.dispose()


@pytest.mark.asyncio
async def test_respond_to_without_history_provider(ready_engine):
    session = ChatSession(ready_engine)

    with pytest.raises(RuntimeError):
        await collect(session.respond_to("c1"))
