"""
Audio helpers for the voice bridge.

Twilio streams mu-law 8kHz mono in both directions, and both Deepgram
endpoints are asked for the same format, so no transcoding happens here:
inbound frames go to STT untouched and synthesized chunks go to Twilio
untouched apart from padding removal.
"""

TWILIO_SAMPLE_RATE = 8000
STT_SAMPLE_RATE = 8000
TTS_SAMPLE_RATE = 8000
AUDIO_ENCODING = "mulaw"

# Mu-law encoding of a zero sample. Deepgram pads the head of streamed chunks with it.
ULAW_FILL_BYTE = 0xFF


def strip_fill_padding(audio_bytes: bytes, fill_byte: int = ULAW_FILL_BYTE) -> bytes:
    """
    Strip a leading run of `fill_byte` from an audio chunk.

    Only the head of the chunk is touched; fill bytes after the first real
    sample are audio and are kept.

    Returns:
        The remaining audio, or b"" if the chunk was empty or fill-only.
    """
    if not audio_bytes:
        return b""

    return bytes(audio_bytes).lstrip(bytes([fill_byte]))


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE) -> float:
    """
    Calculate the duration of mu-law audio in milliseconds (1 byte per sample).
    """
    if not audio_bytes:
        return 0.0

    return len(audio_bytes) / sample_rate * 1000
