"""Streaming chat on top of an inference engine.

Encodes a conversation with the prompt codec, streams the engine's raw output
and yields clean reply deltas. Markup never reaches the caller, not even a
marker that arrives split across several fragments.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence

from core.errors import InferenceFailure
from core.interfaces import (
    ChatStreamChunk,
    ConversationTurn,
    GenerationParams,
    IHistoryProvider,
    IInferenceEngine,
    IReplySink,
    Role,
)
from core.prompt_codec import EncodeOptions, PromptCodec, split_safe_prefix

logger = logging.getLogger(__name__)

INTERRUPTED_SUFFIX = " [generation interrupted]"

# Finish reasons for which the reply is stored
_COMPLETE_REASONS = ("stop", "length")


class ChatSession:
    """Orchestrates one conversation's replies.

    Calls through a session are queued; the engine still rejects generations
    started elsewhere while one is running.
    """

    def __init__(
        self,
        engine: IInferenceEngine,
        codec: PromptCodec | None = None,
        history_provider: IHistoryProvider | None = None,
        reply_sink: IReplySink | None = None,
        params: GenerationParams | None = None,
        encode_options: EncodeOptions | None = None,
    ):
        self._engine = engine
        self._codec = codec or PromptCodec()
        self._history_provider = history_provider
        self._reply_sink = reply_sink
        self._params = params or GenerationParams()
        self._encode_options = encode_options or EncodeOptions()
        self._lock = asyncio.Lock()

    @property
    def codec(self) -> PromptCodec:
        return self._codec

    async def respond(
        self,
        history: Sequence[ConversationTurn],
        params: GenerationParams | None = None,
    ) -> AsyncIterator[ChatStreamChunk]:
        """Stream a reply to a conversation.

        Args:
            history: Turns to show the model, oldest first
            params: Sampling parameters, defaulting to the session's

        Yields:
            Reply deltas. The last chunk has ``finish_reason`` set and carries
            the full reply text.

        Raises:
            EngineBusyError: if another generation holds the engine
            EngineStateError: if no model is loaded
        """
        async with self._lock:
            prompt = self._codec.encode(history, self._encode_options)
            stream = self._engine.generate_stream(prompt, params or self._params)
            buffer = ""
            emitted = ""

            try:
                try:
                    async for fragment in stream:
                        buffer += fragment
                        safe, _ = split_safe_prefix(buffer)
                        visible = self._codec.decode(safe)
                        if len(visible) > len(emitted) and visible.startswith(emitted):
                            delta = visible[len(emitted):]
                            emitted = visible
                            yield ChatStreamChunk(content=delta)
                except InferenceFailure as exc:
                    logger.error("Reply generation interrupted: %s", exc.reason)
                    partial = self._codec.decode(buffer).strip()
                    yield ChatStreamChunk(
                        content="",
                        finish_reason="error",
                        full_text=partial + INTERRUPTED_SUFFIX,
                        error=exc.reason,
                    )
                    return

                decoded = self._codec.decode(buffer)
                remainder = decoded[len(emitted):] if decoded.startswith(emitted) else ""
                yield ChatStreamChunk(
                    content=remainder,
                    finish_reason=stream.finish_reason or "stop",
                    full_text=decoded.strip(),
                )
            finally:
                await stream.aclose()

    async def respond_to(
        self,
        conversation_id: str,
        params: GenerationParams | None = None,
    ) -> AsyncIterator[ChatStreamChunk]:
        """Reply to a stored conversation and store the finished reply."""
        if self._history_provider is None:
            raise RuntimeError("ChatSession has no history provider")

        turns = await self._history_provider.get_history(conversation_id)
        history = [turn for turn in turns if turn.role != Role.SYSTEM]

        final: ChatStreamChunk | None = None
        async for chunk in self.respond(history, params):
            if chunk.finish_reason is not None:
                final = chunk
            yield chunk

        if (
            final is not None
            and final.finish_reason in _COMPLETE_REASONS
            and final.full_text
            and self._reply_sink is not None
        ):
            await self._reply_sink.append_reply(conversation_id, final.full_text)
            logger.debug("Stored reply for conversation %s", conversation_id)
