"""
Deepgram Speech-to-Text streaming client.

Twilio mu-law 8kHz audio is forwarded to Deepgram as-is. Deepgram answers with
interim and final fragments; the UtteranceDetector below turns those into whole
caller utterances:

- final fragments accumulate into a buffer
- `speech_final` (natural pause) emits the buffer
- `UtteranceEnd` (silence timeout) emits the buffer unless `speech_final`
  already did
- interim fragments never accumulate; they are surfaced for barge-in detection
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.voicebridge.audio import AUDIO_ENCODING, STT_SAMPLE_RATE
from src.voicebridge.config import Config

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"

# Accumulated utterances at or below this many characters are discarded.
MIN_TRANSCRIPTION_LENGTH = 5


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_ms: float = 0.0
    interim_transcripts: int = 0
    final_fragments: int = 0
    utterances_emitted: int = 0
    utterances_discarded: int = 0


class UtteranceDetector:
    """
    Utterance/speech-final state machine.

    Pure and synchronous: each input returns the transcription to emit, if any.
    """

    def __init__(self, min_length: int = MIN_TRANSCRIPTION_LENGTH):
        self.min_length = min_length
        self._fragments: List[str] = []
        self.speech_final_seen = False

    @property
    def buffer(self) -> str:
        return " ".join(self._fragments)

    def on_final(self, text: str, speech_final: bool) -> Optional[str]:
        """Handle an `is_final` fragment."""
        if text.strip():
            self._fragments.append(text.strip())

        if not speech_final:
            # More speech is expected; a later UtteranceEnd becomes authoritative.
            self.speech_final_seen = False
            return None

        self.speech_final_seen = True
        return self._take(reason="speech_final")

    def on_utterance_end(self) -> Optional[str]:
        """Handle a Deepgram `UtteranceEnd` message."""
        if self.speech_final_seen:
            # speech_final already emitted this utterance.
            self.speech_final_seen = False
            self._fragments.clear()
            return None

        return self._take(reason="utterance_end")

    def reset(self) -> None:
        self._fragments.clear()
        self.speech_final_seen = False

    def _take(self, *, reason: str) -> Optional[str]:
        text = self.buffer.strip()
        self._fragments.clear()

        if len(text) <= self.min_length:
            logger.debug("Skipping short utterance", reason=reason, text=text)
            return None

        return text


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.

    Callbacks:
        on_transcription: a complete caller utterance
        on_utterance: raw text of an interim (non-final) fragment
    """

    def __init__(
        self,
        config: Config,
        on_transcription: Optional[Callable[[str], Awaitable[None]]] = None,
        on_utterance: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self.config = config
        self._on_transcription = on_transcription
        self._on_utterance = on_utterance
        self._detector = UtteranceDetector()
        self._ws: Optional[Any] = None
        self._is_connected = False
        self._receive_task: Optional[asyncio.Task] = None
        self._metrics = STTMetrics()
        self._last_audio_time: float = 0.0

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    @property
    def detector(self) -> UtteranceDetector:
        return self._detector

    def build_url(self) -> str:
        params = {
            "model": self.config.deepgram_stt_model,
            "encoding": AUDIO_ENCODING,
            "sample_rate": STT_SAMPLE_RATE,
            "channels": 1,
            "punctuate": "true",
            "interim_results": "true",
            "endpointing": self.config.deepgram_endpointing_ms,
            "utterance_end_ms": self.config.deepgram_utterance_end_ms,
        }
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}

        try:
            self._ws = await websockets.connect(
                self.build_url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram STT connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        logger.info("Deepgram STT connected", model=self.config.deepgram_stt_model)

        self._receive_task = asyncio.create_task(self._receive_loop())
        return True

    async def disconnect(self) -> None:
        """Disconnect from Deepgram."""
        self._is_connected = False
        self._detector.reset()

        if self._ws:
            try:
                # Ask Deepgram to flush and close the stream cleanly.
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                logger.debug("Deepgram CloseStream failed", error=str(e))

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected")

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram. Dropped while the channel is not open."""
        if not self._is_connected or not self._ws or not audio_bytes:
            return

        try:
            self._last_audio_time = time.time()
            self._metrics.total_audio_ms += len(audio_bytes) / (STT_SAMPLE_RATE / 1000)
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                    continue

                try:
                    await self.handle_message(data)
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed as e:
            logger.info("Deepgram connection closed", code=getattr(e, "code", None))
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

    async def handle_message(self, data: dict) -> None:
        """Handle a decoded message from Deepgram."""
        msg_type = data.get("type", "")

        if msg_type == "Results":
            alternatives = (data.get("channel") or {}).get("alternatives") or []
            text = alternatives[0].get("transcript", "") if alternatives else ""
            is_final = bool(data.get("is_final", False))
            speech_final = bool(data.get("speech_final", False))

            if is_final:
                self._metrics.final_fragments += 1
                transcript = self._detector.on_final(text, speech_final)
                if transcript is not None:
                    await self._emit_transcription(transcript, reason="speech_final")
                elif speech_final:
                    self._metrics.utterances_discarded += 1
                return

            if not text:
                return

            self._metrics.interim_transcripts += 1
            logger.debug("STT interim", text=text[:50])
            if self._on_utterance:
                await self._on_utterance(text)

        elif msg_type == "UtteranceEnd":
            had_speech_final = self._detector.speech_final_seen
            transcript = self._detector.on_utterance_end()
            if had_speech_final:
                logger.debug("Speech was already final when UtteranceEnd received")
            elif transcript is not None:
                await self._emit_transcription(transcript, reason="utterance_end")
            else:
                self._metrics.utterances_discarded += 1

        elif msg_type == "Metadata":
            logger.debug("Deepgram STT metadata", request_id=data.get("request_id"))

        elif msg_type == "SpeechStarted":
            logger.debug("STT speech started")

        elif msg_type == "Warning":
            logger.warning("Deepgram STT warning", details=data)

        elif msg_type == "Error":
            logger.error(
                "Deepgram STT error",
                error=data.get("description") or data.get("message", "Unknown"),
                details=data,
            )

    async def _emit_transcription(self, transcript: str, *, reason: str) -> None:
        self._metrics.utterances_emitted += 1
        latency_ms = (time.time() - self._last_audio_time) * 1000 if self._last_audio_time else 0.0
        logger.info(
            "STT utterance",
            reason=reason,
            text=transcript[:80],
            latency_ms=round(latency_ms, 2),
        )
        if self._on_transcription:
            await self._on_transcription(transcript)
