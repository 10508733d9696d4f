"""Per-call session gateway.

Constructs and manages the voice pipeline for one call:
inbound Twilio mu-law -> STT (mulaw/8000) -> (on utterance) LLM completion ->
segments -> TTS (mulaw/8000) -> media + mark frames -> Twilio outbound

Features:
- Greeting as soon as the TTS channel is open
- Barge-in: interim speech over queued audio sends a Twilio clear
- Mark bookkeeping for played audio
- Completions run one at a time on a turn worker so STT is never blocked
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from src.voicebridge.config import Config, get_config
from src.voicebridge.llm import CompletionOrchestrator, ConversationContext
from src.voicebridge.playback import PlaybackTracker
from src.voicebridge.stt import DeepgramSTT
from src.voicebridge.tools import ToolCatalog
from src.voicebridge.tts import DeepgramTTS
from src.voicebridge.tts_types import AudioChunk, CompletionSegment
from src.voicebridge.twilio_protocol import (
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioStartEvent,
    create_clear_message,
    create_mark_message,
    create_media_message,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


@dataclass
class Session:
    """State for one call, owned by exactly one SessionGateway."""
    context: ConversationContext
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    stream_sid: str = ""
    call_sid: str = ""
    interaction_count: int = 0
    is_active: bool = False
    playback: PlaybackTracker = field(default_factory=PlaybackTracker)
    started_at: float = 0.0
    ended_at: float = 0.0

    @property
    def duration_seconds(self) -> float:
        if not self.started_at:
            return 0.0
        end = self.ended_at if self.ended_at > 0 else time.time()
        return end - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        stats = self.playback.stats
        return {
            "session_id": self.session_id,
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "interactions": self.interaction_count,
            "context_length": len(self.context),
            "marks_sent": stats.sent,
            "marks_acknowledged": stats.acknowledged,
            "marks_cleared": stats.cleared,
        }


class SessionGateway:
    """
    Main per-call orchestrator.

    Demultiplexes inbound Twilio frames and relays synthesized audio back out.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        config: Optional[Config] = None,
        tools: Optional[ToolCatalog] = None,
        stt: Optional[Any] = None,
        tts: Optional[Any] = None,
        llm_client: Optional[Any] = None,
    ):
        """
        Initialize the gateway.

        Args:
            send_message: Async function to send WebSocket messages to Twilio
            config: Optional configuration (uses default if not provided)
            tools: Tool catalog offered to the model
            stt, tts, llm_client: Optional pre-built components (tests)
        """
        if config is None:
            config = get_config()

        self.config = config
        self._send_message = send_message

        self._orchestrator = CompletionOrchestrator(
            config,
            on_reply=self._on_reply,
            tools=tools,
            client=llm_client,
        )
        self.session = Session(context=self._orchestrator.context)

        self._stt = stt or DeepgramSTT(
            config,
            on_transcription=self._on_transcription,
            on_utterance=self._on_utterance,
        )
        self._tts = tts or DeepgramTTS(config, on_chunk=self._on_audio_chunk)

        self._is_running = False
        self._turn_queue: asyncio.Queue = asyncio.Queue()
        self._turn_worker_task: Optional[asyncio.Task] = None
        self._greeting_task: Optional[asyncio.Task] = None
        self._stt_start_task: Optional[asyncio.Task] = None
        self._tts_connect_task: Optional[asyncio.Task] = None
        self._interruptions = 0

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def playback(self) -> PlaybackTracker:
        return self.session.playback

    @property
    def interruptions(self) -> int:
        return self._interruptions

    async def start(self) -> None:
        """Open the TTS channel and start the turn worker."""
        logger.info("Starting session gateway", session_id=self.session.session_id)
        self._is_running = True

        if self._turn_worker_task is None or self._turn_worker_task.done():
            self._turn_worker_task = asyncio.create_task(self._turn_worker())

        # Open TTS early so the greeting can go out as soon as Twilio starts the stream.
        if self._tts_connect_task is None or self._tts_connect_task.done():
            self._tts_connect_task = asyncio.create_task(self._connect_tts())

    async def stop(self) -> None:
        """Stop all components. Safe to call more than once."""
        if not self._is_running:
            return

        logger.info("Stopping session gateway", session_id=self.session.session_id)
        self._is_running = False
        self.session.is_active = False
        self.session.ended_at = time.time()

        tasks_to_cancel: List[asyncio.Task] = []
        for task in (
            self._greeting_task,
            self._turn_worker_task,
            self._stt_start_task,
            self._tts_connect_task,
        ):
            if task and not task.done():
                task.cancel()
                tasks_to_cancel.append(task)

        if tasks_to_cancel:
            await asyncio.gather(*tasks_to_cancel, return_exceptions=True)

        await self._stt.disconnect()
        await self._tts.close()

        logger.info(
            "Session gateway stopped",
            metrics=self.session.to_dict(),
            interruptions=self._interruptions,
        )

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        A bad frame is logged and dropped; it never ends the call.
        """
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        try:
            if event_type == TwilioEventType.CONNECTED:
                logger.debug("Twilio connected")

            elif event_type == TwilioEventType.START:
                await self._handle_start(event)

            elif event_type == TwilioEventType.MEDIA:
                await self._handle_media(event)

            elif event_type == TwilioEventType.MARK:
                self._handle_mark(event)

            elif event_type == TwilioEventType.STOP:
                logger.info("Twilio media stream ended", stream_sid=self.session.stream_sid)
                await self.stop()

        except Exception as e:
            logger.error(
                "Error handling Twilio event",
                event_type=event_type.value,
                error_type=type(e).__name__,
                error=str(e),
            )

    async def clear_playback(self) -> None:
        """
        Drop audio queued on Twilio's side and forget its marks.

        In-flight synthesis keeps running; only undelivered audio is discarded.
        """
        dropped = self.session.playback.clear()
        self._interruptions += 1

        await self._send(create_clear_message(self.session.stream_sid))
        logger.info(
            "Playback cleared",
            stream_sid=self.session.stream_sid,
            dropped_marks=dropped,
        )

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        session = self.session
        session.stream_sid = event.stream_sid
        session.call_sid = event.call_sid
        session.is_active = True
        session.started_at = time.time()

        # Lets the model hand the call sid to tools such as a transfer.
        session.context.append("system", f"callSid: {event.call_sid}")

        logger.info(
            "Call started",
            session_id=session.session_id,
            call_sid=event.call_sid,
            stream_sid=event.stream_sid,
        )

        # Start STT in the background so a slow STT handshake doesn't block greeting audio.
        if self._stt_start_task and not self._stt_start_task.done():
            self._stt_start_task.cancel()
        self._stt_start_task = asyncio.create_task(self._start_stt_background())

        if self._greeting_task and not self._greeting_task.done():
            self._greeting_task.cancel()
        self._greeting_task = asyncio.create_task(self._send_greeting())

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        if not self._is_running or not event.payload:
            return
        await self._stt.send_audio(event.payload)

    def _handle_mark(self, event: TwilioMarkEvent) -> None:
        mark = self.session.playback.acknowledge(event.name)
        logger.debug(
            "Twilio mark ack",
            mark_name=event.name,
            sequence_number=event.sequence_number,
            matched=mark is not None,
            outstanding=len(self.session.playback.outstanding),
        )

    async def _send_greeting(self) -> None:
        """Speak the greeting once the TTS channel is open."""
        segment = CompletionSegment(text=self.config.greeting, index=None, interaction_count=0)

        timeout = self.config.tts_ready_timeout_seconds

        try:
            if not self._tts.is_ready():
                logger.info("TTS not ready for greeting, waiting")
                if not await self._tts.wait_ready(timeout):
                    logger.warning("Timeout waiting for TTS ready for greeting", timeout_seconds=timeout)
                    # The greeting still goes out if the channel opens later.
                    if not await self._wait_for_tts_connect(timeout):
                        return

            await self._tts.generate(segment, 0)
        except asyncio.CancelledError:
            pass

    async def _wait_for_tts_connect(self, timeout: float) -> bool:
        """Keep waiting while a connect attempt is still running."""
        waited = timeout
        while self._is_running:
            connect_task = self._tts_connect_task
            if connect_task is None or connect_task.done():
                if self._tts.is_ready():
                    return True
                logger.error("TTS channel did not open, greeting skipped", waited_seconds=waited)
                return False

            if await self._tts.wait_ready(timeout):
                return True
            waited += timeout
            logger.debug("Still waiting for TTS ready for greeting", waited_seconds=waited)

        return False

    async def _connect_tts(self) -> None:
        try:
            if not await self._tts.connect():
                logger.error("TTS failed to start")
        except Exception as e:
            logger.error("TTS start task error", error=str(e))

    async def _start_stt_background(self) -> None:
        """Start STT and log success/failure without blocking call audio output."""
        try:
            ok = await self._stt.connect()
            if ok:
                logger.info("STT ready")
            else:
                logger.error("STT failed to start")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("STT start task error", error=str(e))

    async def _on_utterance(self, text: str) -> None:
        """Interim STT text: check for barge-in."""
        if not self._is_running:
            return

        if self.session.playback.is_barge_in(text):
            logger.info("Interruption detected, clearing stream", text=text[:50])
            await self.clear_playback()

    async def _on_transcription(self, text: str) -> None:
        """Complete caller utterance: queue it for the turn worker."""
        if not self._is_running or not text:
            return

        interaction_count = self.session.interaction_count
        self.session.interaction_count += 1
        logger.info("Interaction queued", interaction_count=interaction_count, text=text[:80])
        await self._turn_queue.put((text, interaction_count))

    async def _turn_worker(self) -> None:
        """Run completions sequentially so the STT receive loop never blocks."""
        try:
            while self._is_running:
                text, interaction_count = await self._turn_queue.get()
                try:
                    await self._orchestrator.completion(text, interaction_count)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(
                        "Completion failed",
                        interaction_count=interaction_count,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                finally:
                    self._turn_queue.task_done()
        except asyncio.CancelledError:
            pass

    async def _on_reply(self, segment: CompletionSegment) -> None:
        if not self._is_running:
            return
        await self._tts.generate(segment, segment.interaction_count)

    async def _on_audio_chunk(self, chunk: AudioChunk) -> None:
        """Relay one chunk as a media frame followed by its mark."""
        if not self.session.is_active:
            return

        stream_sid = self.session.stream_sid
        logger.debug(
            "TTS chunk -> Twilio",
            interaction_count=chunk.interaction_count,
            segment_index=chunk.segment_index,
            bytes=len(chunk.audio_bytes),
        )

        await self._send(create_media_message(stream_sid, chunk.audio_bytes))
        mark = self.session.playback.register(chunk.segment_index)
        await self._send(create_mark_message(stream_sid, mark.label))

    async def _send(self, message: str) -> None:
        try:
            await self._send_message(message)
        except Exception as e:
            logger.error("Failed to send Twilio message", error=str(e))


async def create_pipeline(
    send_message: Callable[[str], Awaitable[None]],
    tools: Optional[ToolCatalog] = None,
) -> SessionGateway:
    """
    Create and start a new session gateway.

    Args:
        send_message: Function to send messages to Twilio WebSocket
        tools: Tool catalog offered to the model

    Returns:
        Initialized and started SessionGateway
    """
    gateway = SessionGateway(send_message, tools=tools)
    await gateway.start()
    return gateway
