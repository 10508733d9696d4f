"""
Scripted stand-ins for the LLM client and the Deepgram adapters.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock


def content_chunk(content=None, finish_reason=None):
    """One streamed chat-completion chunk carrying text."""
    delta = SimpleNamespace(content=content, tool_calls=None)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


def tool_chunk(name=None, arguments=None, finish_reason=None):
    """One streamed chat-completion chunk carrying a tool-call fragment."""
    function = SimpleNamespace(name=name, arguments=arguments)
    call = SimpleNamespace(index=0, id="call_1", type="function", function=function)
    delta = SimpleNamespace(content=None, tool_calls=[call])
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


def finish_chunk(finish_reason):
    delta = SimpleNamespace(content=None, tool_calls=None)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


class FakeStream:
    """Async iterator standing in for an OpenAI streaming response."""

    def __init__(self, chunks):
        self._chunks = list(chunks)

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for chunk in self._chunks:
            await asyncio.sleep(0)
            yield chunk


class FakeLLMClient:
    """
    Minimal AsyncOpenAI stand-in.

    Each `chat.completions.create` call pops the next scripted response; an
    Exception instance is raised instead of streamed.
    """

    def __init__(self, *responses):
        self._responses = list(responses)
        self.requests = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **request):
        # Snapshot messages; the context keeps growing after the call.
        self.requests.append({**request, "messages": list(request.get("messages", []))})
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return FakeStream(response)


class FakeTTS:
    """Records generate() calls; readiness is controlled by the test."""

    def __init__(self, ready=True):
        self._ready = asyncio.Event()
        if ready:
            self._ready.set()
        self.generated = []
        self.connect = AsyncMock(return_value=True)
        self.close = AsyncMock()

    def is_ready(self):
        return self._ready.is_set()

    async def wait_ready(self, timeout):
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def set_ready(self):
        self._ready.set()

    async def generate(self, segment, interaction_count):
        self.generated.append((segment, interaction_count))


class FakeSTT:
    def __init__(self):
        self.connect = AsyncMock(return_value=True)
        self.disconnect = AsyncMock()
        self.send_audio = AsyncMock()
