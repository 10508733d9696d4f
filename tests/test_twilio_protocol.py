"""
Tests for Twilio protocol handling.
"""

import pytest
import json
import base64

from src.voicebridge.twilio_protocol import (
    TwilioEventType,
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioMarkEvent,
    parse_twilio_message,
    create_media_message,
    create_mark_message,
    create_clear_message,
)


class TestMessageParsing:
    """Tests for parsing Twilio messages."""

    def test_parse_connected_event(self):
        """Test parsing connected event."""
        message = json.dumps({"event": "connected", "protocol": "Call", "version": "1.0.0"})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.CONNECTED
        assert event["protocol"] == "Call"

    def test_parse_start_event(self, twilio_start_message):
        """Test parsing start event."""
        event_type, event = parse_twilio_message(twilio_start_message)

        assert event_type == TwilioEventType.START
        assert isinstance(event, TwilioStartEvent)
        assert event.stream_sid == "MZ123456"
        assert event.call_sid == "CA789012"
        assert event.account_sid == "AC345678"
        assert event.tracks == ["inbound"]

    def test_parse_start_event_stream_sid_inside_start(self):
        """streamSid is read from the start block when the top-level copy is missing."""
        message = json.dumps({
            "event": "start",
            "start": {"streamSid": "MZ999", "callSid": "CA1", "customParameters": {"k": "v"}},
        })

        _, event = parse_twilio_message(message)

        assert event.stream_sid == "MZ999"
        assert event.custom_parameters == {"k": "v"}

    def test_parse_media_event(self, twilio_media_message, sample_ulaw_audio):
        """Test parsing media event."""
        event_type, event = parse_twilio_message(twilio_media_message)

        assert event_type == TwilioEventType.MEDIA
        assert isinstance(event, TwilioMediaEvent)
        assert event.stream_sid == "MZ123456"
        assert event.track == "inbound"
        assert event.payload == sample_ulaw_audio

    def test_parse_media_event_bad_base64(self):
        message = json.dumps({
            "event": "media",
            "streamSid": "MZ123",
            "media": {"payload": "!!not base64!!"},
        })

        _, event = parse_twilio_message(message)

        assert event.payload == b""

    def test_parse_mark_event(self):
        """Test parsing mark event."""
        message = json.dumps({
            "event": "mark",
            "sequenceNumber": "7",
            "streamSid": "MZ123",
            "mark": {
                "name": "m3",
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MARK
        assert isinstance(event, TwilioMarkEvent)
        assert event.stream_sid == "MZ123"
        assert event.name == "m3"
        assert event.sequence_number == 7

    def test_parse_stop_event(self, twilio_stop_message):
        """Test parsing stop event."""
        event_type, event = parse_twilio_message(twilio_stop_message)

        assert event_type == TwilioEventType.STOP
        assert event["streamSid"] == "MZ123456"

    def test_parse_bytes(self):
        event_type, _ = parse_twilio_message(b'{"event": "connected"}')

        assert event_type == TwilioEventType.CONNECTED

    def test_parse_invalid_json(self):
        """Test parsing invalid JSON raises error."""
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_twilio_message("not valid json")

    def test_parse_non_object(self):
        with pytest.raises(ValueError, match="Invalid message"):
            parse_twilio_message("[1, 2, 3]")

    def test_parse_unknown_event(self):
        """Test parsing unknown event type raises error."""
        message = json.dumps({"event": "dtmf", "dtmf": {"digit": "5"}})
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_twilio_message(message)


class TestMessageCreation:
    """Tests for creating Twilio messages."""

    def test_create_media_message(self, sample_ulaw_audio):
        """Test creating media message."""
        message = create_media_message("MZ123", sample_ulaw_audio)

        parsed = json.loads(message)

        assert parsed["event"] == "media"
        assert parsed["streamSid"] == "MZ123"

        # Verify payload decodes correctly
        decoded = base64.b64decode(parsed["media"]["payload"])
        assert decoded == sample_ulaw_audio

    def test_create_mark_message(self):
        """Test creating mark message."""
        message = create_mark_message("MZ123", "m42")

        parsed = json.loads(message)

        assert parsed == {"event": "mark", "streamSid": "MZ123", "mark": {"name": "m42"}}

    def test_create_clear_message(self):
        """Test creating clear message."""
        message = create_clear_message("MZ123")

        parsed = json.loads(message)

        assert parsed == {"event": "clear", "streamSid": "MZ123"}
