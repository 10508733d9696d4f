"""
Tests for the HTTP surface: TwiML webhook, health, metrics and the media-stream WebSocket.
"""

import base64
import json
import os
import xml.etree.ElementTree as ET
from unittest.mock import patch

from fastapi.testclient import TestClient

from src.voicebridge.config import get_config
from src.voicebridge.pipeline import SessionGateway
from src.voicebridge.tts_types import AudioChunk
from tests.helpers import FakeLLMClient, FakeSTT, FakeTTS


def make_client():
    from server.app import app
    return TestClient(app, raise_server_exceptions=False)


class TestTwimlGeneration:
    """Tests for the incoming-call webhook."""

    def test_twiml_contains_stream_element(self):
        client = make_client()
        response = client.post("/incoming")

        assert response.status_code == 200
        assert "application/xml" in response.headers.get("content-type", "")

        content = response.text
        assert "<Response>" in content
        assert "<Connect>" in content
        assert "<Stream" in content
        assert 'url="wss://test.ngrok.io/connection"' in content

    def test_twiml_is_valid_xml(self):
        client = make_client()
        response = client.post("/incoming")

        root = ET.fromstring(response.text)
        assert root.tag == "Response"
        stream = root.find("./Connect/Stream")
        assert stream is not None
        assert stream.get("url") == "wss://test.ngrok.io/connection"

    def test_twiml_uses_configured_host(self):
        test_host = "my-custom-domain.example.com"

        with patch.dict(os.environ, {"PUBLIC_HOST": test_host}):
            get_config.cache_clear()

            client = make_client()
            response = client.post("/incoming")

            assert f"wss://{test_host}/connection" in response.text


class TestHealthEndpoint:

    def test_health_returns_ok(self):
        client = make_client()
        response = client.get("/health")

        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert "active_calls" in data


class TestMetricsEndpoint:

    def test_metrics_returns_json(self):
        client = make_client()
        response = client.get("/metrics")

        assert response.status_code == 200

        data = response.json()
        assert "uptime_seconds" in data
        assert "total_calls" in data
        assert "active_calls" in data
        assert "errors" in data
        assert "interruptions" in data
        assert "marks_acknowledged" in data


class RelayingTTS(FakeTTS):
    """Synthesizes every segment into one short chunk."""

    def __init__(self):
        super().__init__()
        self.on_chunk = None

    async def generate(self, segment, interaction_count):
        await super().generate(segment, interaction_count)
        await self.on_chunk(
            AudioChunk(audio_bytes=b"\x10\x20", segment_index=segment.index, interaction_count=interaction_count)
        )


class TestMediaStreamEndpoint:
    """Tests for the /connection WebSocket."""

    def _patch_pipeline(self, monkeypatch):
        gateways = []

        async def fake_create_pipeline(send_message, tools=None):
            tts = RelayingTTS()
            gateway = SessionGateway(send_message, stt=FakeSTT(), tts=tts, llm_client=FakeLLMClient())
            tts.on_chunk = gateway._on_audio_chunk
            await gateway.start()
            gateways.append(gateway)
            return gateway

        monkeypatch.setattr("src.voicebridge.pipeline.create_pipeline", fake_create_pipeline)
        return gateways

    def test_call_greets_and_ends_on_stop(self, monkeypatch, twilio_start_message, twilio_stop_message):
        from server.app import metrics

        gateways = self._patch_pipeline(monkeypatch)
        calls_before = metrics.total_calls
        acked_before = metrics.marks_acknowledged

        client = make_client()
        with client.websocket_connect("/connection") as ws:
            ws.send_text(twilio_start_message)

            media = ws.receive_json()
            mark = ws.receive_json()
            assert media["event"] == "media"
            assert media["streamSid"] == "MZ123456"
            assert base64.b64decode(media["media"]["payload"]) == b"\x10\x20"
            assert mark == {"event": "mark", "streamSid": "MZ123456", "mark": {"name": "m1"}}

            ws.send_text(json.dumps({"event": "mark", "streamSid": "MZ123456", "mark": {"name": "m1"}}))
            ws.send_text(twilio_stop_message)

        gateway = gateways[0]
        assert not gateway.is_running
        assert gateway.session.call_sid == "CA789012"
        assert gateway.playback.outstanding == []
        assert metrics.total_calls == calls_before + 1
        assert metrics.active_calls == 0
        assert metrics.marks_acknowledged == acked_before + 1

    def test_bad_frame_does_not_end_call(self, monkeypatch, twilio_start_message, twilio_stop_message):
        gateways = self._patch_pipeline(monkeypatch)

        client = make_client()
        with client.websocket_connect("/connection") as ws:
            ws.send_text("{not json")
            ws.send_text(twilio_start_message)

            assert ws.receive_json()["event"] == "media"
            assert ws.receive_json()["event"] == "mark"

            ws.send_text(twilio_stop_message)

        assert not gateways[0].is_running
