"""
Streaming chat-completion orchestration.

Provides:
- Startup model validation
- Append-only conversation context
- Segmentation of streamed text into speakable segments
- Tool calls: filler phrase, handler invocation, follow-up completion
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple

import httpx
import structlog
from openai import AsyncOpenAI

from src.voicebridge.config import Config
from src.voicebridge.tools import ArgParseError, ToolCatalog, ToolInvocation, parse_tool_arguments
from src.voicebridge.tts_types import CompletionSegment

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"

# A segment is flushed to TTS once it reaches this length, even mid-sentence.
SEGMENT_FLUSH_CHARS = 30
TERMINAL_PUNCTUATION = (".", ",", "?", "!")

# Last whitespace character in a buffer; everything after it is a possibly partial word.
_LAST_WHITESPACE = re.compile(r"\s(?=\S*\Z)")


@dataclass(frozen=True)
class Message:
    """A single message in the conversation."""
    role: str  # "system" | "user" | "assistant" | "function"
    content: str
    name: Optional[str] = None

    def to_openai(self) -> Dict[str, str]:
        message = {"role": self.role, "content": self.content}
        if self.name:
            message["name"] = self.name
        return message


class ConversationContext:
    """Append-only conversation history for one call."""

    def __init__(self, messages: Optional[List[Message]] = None):
        self._messages: List[Message] = list(messages or [])

    @classmethod
    def seeded(cls, config: Config) -> "ConversationContext":
        """Context with the system prompt and the greeting as the first assistant turn."""
        return cls([
            Message(role="system", content=config.system_prompt),
            Message(role="assistant", content=config.greeting),
        ])

    def append(self, role: str, content: str, name: Optional[str] = None) -> Message:
        message = Message(role=role, content=content, name=name)
        self._messages.append(message)
        return message

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def to_openai(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format."""
        return [message.to_openai() for message in self._messages]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.messages)


class ResponseSegmenter:
    """
    Accumulates streamed text and decides when a segment is ready for TTS.

    Flushes on trailing punctuation, or on length up to the last word boundary
    so a word split across tokens is never spoken in pieces. The caller flushes
    explicitly at end of stream.
    """

    def __init__(self, max_chars: int = SEGMENT_FLUSH_CHARS):
        self.max_chars = max_chars
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, content: str) -> Optional[str]:
        self._buffer += content
        if self._buffer.strip().endswith(TERMINAL_PUNCTUATION):
            return self.flush()
        if len(self._buffer) >= self.max_chars:
            return self._flush_to_word_boundary()
        return None

    def _flush_to_word_boundary(self) -> Optional[str]:
        match = _LAST_WHITESPACE.search(self._buffer)
        head = self._buffer[:match.start()].strip() if match else ""
        if not head:
            # One long run with no whitespace.
            return self.flush()

        self._buffer = self._buffer[match.end():]
        return head

    def flush(self) -> Optional[str]:
        text = self._buffer.strip()
        self._buffer = ""
        return text or None


class CompletionState(str, Enum):
    STREAMING = "streaming"
    AWAITING_TOOL = "awaiting_tool"
    DONE = "done"


def create_client(config: Config) -> AsyncOpenAI:
    """OpenAI client pointed at the configured provider."""
    base_url = GROQ_BASE_URL if config.llm_provider == "groq" else OPENAI_BASE_URL
    return AsyncOpenAI(api_key=config.llm_api_key, base_url=base_url)


async def validate_model(config: Config) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {base_url}/models on the configured provider.

    Raises:
        SystemExit: If the model doesn't exist or the API is unreachable (fail fast)
    """
    base_url = GROQ_BASE_URL if config.llm_provider == "groq" else OPENAI_BASE_URL
    model_name = config.llm_model
    logger.info("Validating LLM model", provider=config.llm_provider, model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {config.llm_api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to LLM API", error=str(e))
            raise SystemExit(
                f"Failed to connect to {config.llm_provider} API: {e}\n"
                "Check your network connection and API key."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch LLM models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate LLM model. API returned status {response.status_code}. "
            "Check your API key."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(str(m) for m in model_ids)[:10])
        logger.error("LLM model not found", requested_model=model_name, available_models=available)
        raise SystemExit(
            f"Model '{model_name}' not found in available models.\n"
            f"Available models include: {available}"
        )

    logger.info("LLM model validated successfully", model=model_name)
    return True


class CompletionOrchestrator:
    """
    Drives streaming completions for one call.

    Every emitted segment is passed to `on_reply`. Numbered segments draw from a
    counter that lives as long as the orchestrator; filler phrases carry no index.
    """

    def __init__(
        self,
        config: Config,
        on_reply: Optional[Callable[[CompletionSegment], Awaitable[None]]] = None,
        tools: Optional[ToolCatalog] = None,
        client: Optional[Any] = None,
        context: Optional[ConversationContext] = None,
    ):
        self.config = config
        self.model = config.llm_model
        self.tools = tools or ToolCatalog()
        self.context = context if context is not None else ConversationContext.seeded(config)
        self._client = client if client is not None else create_client(config)
        self._on_reply = on_reply
        self._next_index = 0

    @property
    def next_index(self) -> int:
        return self._next_index

    async def completion(
        self,
        text: str,
        interaction_count: int,
        role: str = "user",
        name: Optional[str] = None,
    ) -> None:
        """
        Run one interaction to completion.

        A tool call re-enters STREAMING with the tool result as a `function`
        message; the interaction ends on a plain stop or on any failure.
        """
        self.context.append(role, text, name)

        state = CompletionState.STREAMING
        invocation: Optional[ToolInvocation] = None

        while state != CompletionState.DONE:
            if state == CompletionState.STREAMING:
                invocation = await self._stream_cycle(interaction_count)
                state = CompletionState.AWAITING_TOOL if invocation else CompletionState.DONE

            elif state == CompletionState.AWAITING_TOOL:
                result = await self._run_tool(invocation, interaction_count)
                if result is None:
                    state = CompletionState.DONE
                    continue

                self.context.append("function", result, name=invocation.name)
                state = CompletionState.STREAMING

        logger.debug(
            "Completion finished",
            interaction_count=interaction_count,
            context_length=len(self.context),
        )

    async def _stream_cycle(self, interaction_count: int) -> Optional[ToolInvocation]:
        """
        Stream one completion request.

        Returns the requested tool call, or None when the interaction is over.
        """
        request: Dict[str, Any] = {
            "model": self.model,
            "messages": self.context.to_openai(),
            "stream": True,
        }
        if len(self.tools):
            request["tools"] = self.tools.definitions()

        segmenter = ResponseSegmenter()
        complete_response = ""
        invocation: Optional[ToolInvocation] = None

        try:
            stream = await self._client.chat.completions.create(**request)

            async for chunk in stream:
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                finish_reason = choice.finish_reason

                content = (getattr(delta, "content", None) or "") if delta else ""
                if content:
                    complete_response += content
                    segment_text = segmenter.feed(content)
                    if segment_text:
                        await self._emit_ordered(segment_text, interaction_count)

                tool_calls = getattr(delta, "tool_calls", None) if delta else None
                if tool_calls:
                    function = getattr(tool_calls[0], "function", None)
                    if invocation is None:
                        invocation = ToolInvocation()
                    invocation.add_fragment(
                        getattr(function, "name", None),
                        getattr(function, "arguments", None),
                    )

                if finish_reason == "tool_calls":
                    # Text spoken before the tool call keeps its place ahead of the filler.
                    await self._flush(segmenter, interaction_count)
                    if complete_response.strip():
                        self.context.append("assistant", complete_response)
                    return invocation or ToolInvocation()

                if finish_reason:
                    break

        except Exception as e:
            logger.error(
                "LLM generation failed",
                interaction_count=interaction_count,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

        await self._flush(segmenter, interaction_count)

        if complete_response:
            self.context.append("assistant", complete_response)

        return None

    async def _run_tool(self, invocation: ToolInvocation, interaction_count: int) -> Optional[str]:
        """Say the filler phrase and call the handler. Returns None on any failure."""
        tool = self.tools.get(invocation.name)
        if tool is None:
            logger.error("Model requested unknown tool", tool=invocation.name)
            return None

        try:
            invocation.arguments = parse_tool_arguments(invocation.raw_arguments)
        except ArgParseError as e:
            logger.error("Tool arguments unrecoverable", tool=tool.name, error=str(e), raw=e.raw[:200])
            return None

        if tool.say:
            await self._emit(CompletionSegment(text=tool.say, index=None, interaction_count=interaction_count))

        logger.info("Calling tool", tool=tool.name, interaction_count=interaction_count)
        try:
            invocation.result = await tool.invoke(invocation.arguments)
        except Exception as e:
            logger.error("Tool handler failed", tool=tool.name, error_type=type(e).__name__, error=str(e))
            return None

        return invocation.result

    async def _flush(self, segmenter: ResponseSegmenter, interaction_count: int) -> None:
        segment_text = segmenter.flush()
        if segment_text:
            await self._emit_ordered(segment_text, interaction_count)

    async def _emit_ordered(self, text: str, interaction_count: int) -> None:
        index = self._next_index
        self._next_index += 1
        await self._emit(CompletionSegment(text=text, index=index, interaction_count=interaction_count))

    async def _emit(self, segment: CompletionSegment) -> None:
        logger.info(
            "LLM reply segment",
            interaction_count=segment.interaction_count,
            index=segment.index,
            text=segment.text[:80],
        )
        if self._on_reply:
            await self._on_reply(segment)
