"""
Deepgram Aura streaming TTS over a single duplex WebSocket.

One connection per call. Text goes out as `Speak` messages followed by an
explicit `Flush`; audio comes back as raw mu-law binary frames in the order the
text was sent. Frames carry no correlation id, so each chunk is tagged with the
segment that was sent most recently.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.voicebridge.audio import (
    AUDIO_ENCODING,
    TTS_SAMPLE_RATE,
    get_audio_duration_ms,
    strip_fill_padding,
)
from src.voicebridge.config import Config
from src.voicebridge.tts_types import AudioChunk, CompletionSegment

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_URL = "wss://api.deepgram.com/v1/speak"
CONNECT_RETRY_DELAY_SECONDS = 0.5


@dataclass
class TTSMetrics:
    """Metrics for TTS performance."""

    total_requests: int = 0
    total_characters: int = 0
    total_audio_ms: float = 0.0
    chunks_emitted: int = 0
    chunks_dropped: int = 0
    padding_bytes_stripped: int = 0
    sends_dropped: int = 0


class DeepgramTTS:
    """
    Deepgram streaming TTS client.

    `on_chunk` receives every non-empty, padding-stripped audio chunk in arrival order.
    """

    def __init__(
        self,
        config: Config,
        on_chunk: Optional[Callable[[AudioChunk], Awaitable[None]]] = None,
    ):
        self.config = config
        self._on_chunk = on_chunk
        self._ws: Optional[Any] = None
        self._ready = asyncio.Event()
        self._receive_task: Optional[asyncio.Task] = None
        self._metrics = TTSMetrics()

        # Tags applied to incoming audio.
        self._current_index: Optional[int] = None
        self._current_interaction: int = 0

    @property
    def metrics(self) -> TTSMetrics:
        return self._metrics

    def is_ready(self) -> bool:
        return self._ready.is_set()

    async def wait_ready(self, timeout: float) -> bool:
        """Wait for the channel to open. Returns False on timeout."""
        if self._ready.is_set():
            return True
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def build_url(self) -> str:
        params = {
            "model": self.config.deepgram_tts_model,
            "encoding": AUDIO_ENCODING,
            "sample_rate": TTS_SAMPLE_RATE,
        }
        return f"{DEEPGRAM_SPEAK_URL}?{urlencode(params)}"

    async def connect(self) -> bool:
        """
        Open the synthesis channel.

        Makes up to `tts_connect_attempts` attempts. Once open, a dropped channel
        is not reopened.
        """
        if self._ready.is_set():
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        attempts = max(1, self.config.tts_connect_attempts)

        for attempt in range(1, attempts + 1):
            try:
                self._ws = await websockets.connect(
                    self.build_url(),
                    additional_headers=headers,
                    open_timeout=10,
                )
                break
            except Exception as e:
                logger.warning(
                    "Deepgram TTS connection attempt failed",
                    attempt=attempt,
                    attempts=attempts,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                self._ws = None
                if attempt < attempts:
                    await asyncio.sleep(CONNECT_RETRY_DELAY_SECONDS)

        if not self._ws:
            logger.error("Deepgram TTS connection failed", attempts=attempts)
            return False

        self._ready.set()
        logger.info("Deepgram TTS connected", model=self.config.deepgram_tts_model)

        self._receive_task = asyncio.create_task(self._receive_loop())
        return True

    async def close(self) -> None:
        ws = self._ws
        was_open = self._ready.is_set()
        self._ready.clear()

        if ws and was_open:
            try:
                await ws.send(json.dumps({"type": "Close"}))
            except Exception as e:
                logger.debug("Deepgram TTS close message failed", error=str(e))

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if ws:
            try:
                await ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram TTS connection", error=str(e))

        self._ws = None

    async def generate(self, segment: CompletionSegment, interaction_count: int) -> None:
        """
        Queue one segment for synthesis.

        Empty text is ignored. Audio for the segment arrives through `on_chunk`.
        """
        text = segment.text
        index = segment.index

        if not text or not text.strip():
            logger.debug("Skipping empty TTS segment", index=index, interaction_count=interaction_count)
            return

        if not self._ready.is_set() or not self._ws:
            self._metrics.sends_dropped += 1
            logger.warning(
                "TTS channel not open, dropping segment",
                index=index,
                interaction_count=interaction_count,
                text=text[:50],
            )
            return

        self._current_index = index
        self._current_interaction = interaction_count

        try:
            await self._ws.send(json.dumps({"type": "Speak", "text": text}))
            await self._ws.send(json.dumps({"type": "Flush"}))
        except Exception as e:
            self._metrics.sends_dropped += 1
            logger.error(
                "Failed to send text to Deepgram TTS",
                index=index,
                interaction_count=interaction_count,
                error=str(e),
            )
            return

        self._metrics.total_requests += 1
        self._metrics.total_characters += len(text)
        logger.info(
            "TTS segment sent",
            index=index,
            interaction_count=interaction_count,
            text=text[:80],
        )

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, (bytes, bytearray)):
                    await self.handle_audio(bytes(message))
                    continue

                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram TTS")
                    continue

                self._handle_control(data)

        except websockets.exceptions.ConnectionClosed as e:
            logger.info("Deepgram TTS connection closed", code=getattr(e, "code", None))
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram TTS receive loop error", error=str(e))
        finally:
            self._ready.clear()

    async def handle_audio(self, raw: bytes) -> None:
        """Strip padding from one raw chunk, tag it and hand it on."""
        audio = strip_fill_padding(raw)
        if not audio:
            self._metrics.chunks_dropped += 1
            return

        self._metrics.padding_bytes_stripped += len(raw) - len(audio)
        self._metrics.chunks_emitted += 1
        self._metrics.total_audio_ms += get_audio_duration_ms(audio)

        chunk = AudioChunk(
            audio_bytes=audio,
            segment_index=self._current_index,
            interaction_count=self._current_interaction,
            timestamp=time.time(),
        )
        if self._on_chunk:
            try:
                await self._on_chunk(chunk)
            except Exception as e:
                logger.error("TTS chunk handler failed", error=str(e))

    def _handle_control(self, data: dict) -> None:
        msg_type = data.get("type", "")

        if msg_type in ("Metadata", "Flushed", "Cleared"):
            logger.debug("Deepgram TTS control", type=msg_type, details=data)
        elif msg_type == "Warning":
            logger.warning("Deepgram TTS warning", details=data)
        elif msg_type == "Error":
            logger.error(
                "Deepgram TTS error",
                error=data.get("description") or data.get("err_msg", "Unknown"),
                details=data,
            )
        else:
            logger.debug("Unhandled Deepgram TTS message", type=msg_type)
