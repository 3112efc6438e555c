"""Prompt codec for ChatML-style chat models (LFM2.5 family).

Frames a conversation into the markup the runtime expects and strips the
markup back out of raw model output::

    <|startoftext|><|im_start|>system
    You are a helpful assistant trained by Liquid AI.<|im_end|>
    <|im_start|>user
    What is C. elegans?<|im_end|>
    <|im_start|>assistant

Encoding and decoding are pure: no I/O and no shared state.
"""

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass

from pydantic import BaseModel, Field

from core.interfaces.chat import ConversationTurn, Role

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful travel assistant trained by Liquid AI. "
    "You help users plan their cruise vacations and travel itineraries. "
    "Provide detailed, accurate, and friendly advice."
)

# Special tokens for LFM2.5
BOS_TOKEN = "<|startoftext|>"
IM_START_TOKEN = "<|im_start|>"
IM_END_TOKEN = "<|im_end|>"
TOOL_CALL_START_TOKEN = "<|tool_call_start|>"
TOOL_CALL_END_TOKEN = "<|tool_call_end|>"

TOOLS_HEADER = "List of tools: "

# The end-of-turn marker is also the stop sequence for generation
END_OF_TURN = IM_END_TOKEN

_ROLE_NAMES = "|".join(role.value for role in Role)

_MARKER_RE = re.compile(
    "|".join([
        re.escape(BOS_TOKEN),
        re.escape(IM_START_TOKEN) + rf"(?:(?:{_ROLE_NAMES})\n)?",
        re.escape(IM_END_TOKEN) + r"\n?",
        re.escape(TOOL_CALL_START_TOKEN),
        re.escape(TOOL_CALL_END_TOKEN),
    ])
)

_TOOL_CALL_RE = re.compile(
    re.escape(TOOL_CALL_START_TOKEN) + r"(.*?)" + re.escape(TOOL_CALL_END_TOKEN),
    re.DOTALL,
)

# Complete spellings a streamed buffer can end inside of
_MARKER_FORMS: tuple[str, ...] = (
    BOS_TOKEN,
    *(f"{IM_START_TOKEN}{role.value}\n" for role in Role),
    f"{IM_END_TOKEN}\n",
    TOOL_CALL_START_TOKEN,
    TOOL_CALL_END_TOKEN,
)
_MAX_MARKER_LEN = max(len(form) for form in _MARKER_FORMS)


class ToolSpec(BaseModel):
    """A tool the model may call, described to it in the system turn."""

    name: str
    description: str = ""
    parameters: dict = Field(default_factory=dict)  # JSON schema


@dataclass(frozen=True)
class EncodeOptions:
    """Options for framing a conversation."""

    include_system_prompt: bool = True
    add_generation_prompt: bool = True
    tools: Sequence[ToolSpec] | None = None
    system_prompt: str | None = None  # Overrides the codec's persona


def turn_open(role: Role | str) -> str:
    """Opening marker for a turn, including the role line."""
    return f"{IM_START_TOKEN}{Role(role).value}\n"


def turn_close() -> str:
    """Closing marker for a turn."""
    return f"{IM_END_TOKEN}\n"


def serialize_tools(tools: Sequence[ToolSpec]) -> str:
    """Serialize tool specs as a compact, key-sorted JSON array."""
    payload = [tool.model_dump(include={"name", "description", "parameters"}) for tool in tools]
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


class PromptCodec:
    """Encodes conversation history into a prompt and decodes model output."""

    def __init__(self, system_prompt: str = DEFAULT_SYSTEM_PROMPT):
        self._system_prompt = system_prompt

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    def encode(
        self,
        history: Sequence[ConversationTurn],
        options: EncodeOptions | None = None,
    ) -> str:
        """Frame a conversation into a prompt document.

        History is emitted as given: callers are expected to drop turns they
        do not want the model to see (e.g. stored system messages).

        Args:
            history: Conversation turns in chronological order
            options: Framing options

        Returns:
            The prompt, starting with the begin-of-text marker
        """
        options = options or EncodeOptions()
        parts = [BOS_TOKEN]

        if options.include_system_prompt:
            system_text = options.system_prompt if options.system_prompt is not None else self._system_prompt
            if options.tools:
                system_text = f"{system_text}\n{TOOLS_HEADER}{serialize_tools(options.tools)}"
            parts.append(turn_open(Role.SYSTEM) + system_text + turn_close())

        for turn in history:
            parts.append(turn_open(turn.role) + turn.content + turn_close())

        if options.add_generation_prompt:
            parts.append(turn_open(Role.ASSISTANT))

        return "".join(parts)

    def encode_user_message(self, content: str) -> str:
        """Frame a single user message with the default system turn."""
        return self.encode([ConversationTurn(role=Role.USER, content=content)])

    def decode(self, raw: str) -> str:
        """Strip all markup from raw model output.

        A marker cut off at the end of the text is left as is; streaming
        callers should decode only what ``split_safe_prefix`` returns.
        """
        return _MARKER_RE.sub("", raw)

    def extract_tool_calls(self, raw: str) -> list[str]:
        """Return the serialized invocations wrapped in tool-call markers."""
        return [match.strip() for match in _TOOL_CALL_RE.findall(raw)]


def split_safe_prefix(buffer: str) -> tuple[str, str]:
    """Split a streamed buffer before a trailing, possibly partial marker.

    Returns ``(safe, held)`` where ``held`` is the shortest tail that could
    still grow into a marker. ``safe + held == buffer``.
    """
    start = max(0, len(buffer) - _MAX_MARKER_LEN)
    for i in range(start, len(buffer)):
        if buffer[i] != "<":
            continue
        tail = buffer[i:]
        if any(len(tail) < len(form) and form.startswith(tail) for form in _MARKER_FORMS):
            return buffer[:i], tail
    return buffer, ""
