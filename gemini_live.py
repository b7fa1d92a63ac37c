"""Gemini Live (BidiGenerateContent) duplex connection over a raw websocket.

Protocol:
  -> {"setup": {...}}                      model, voice, system instruction, tools
  <- {"setupComplete": {}}                 handshake done
  -> {"clientContent": {...}}              synthetic text turns (greeting)
  -> {"realtimeInput": {"audio": {...}}}   one per captured frame, base64 PCM 16kHz
  <- {"toolCall": {"functionCalls": [...]}}
  -> {"toolResponse": {"functionResponses": [...]}}
  <- {"serverContent": {"interrupted" | "modelTurn" | "turnComplete"}}

Inbound messages are turned into SessionEvents by session_events.parse_server_message.
"""

import json
import logging

import websockets

from pcm_codec import CAPTURE_MIME_TYPE, base64_encode
from session_events import EventType, SessionEvent, parse_server_message

logger = logging.getLogger(__name__)

GEMINI_WEBSOCKET_HOST = "generativelanguage.googleapis.com"
LIVE_URL = (
    f"wss://{GEMINI_WEBSOCKET_HOST}/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)


class TransportError(Exception):
    """The live connection could not be opened or used."""


def build_setup_message(model: str, system_instruction: str = "", tools: list = None,
                        voice: str = "Aoede") -> dict:
    if not model.startswith("models/"):
        model = f"models/{model}"

    setup = {
        "model": model,
        "generationConfig": {
            "responseModalities": ["AUDIO"],
            "speechConfig": {
                "voiceConfig": {
                    "prebuiltVoiceConfig": {"voiceName": voice},
                },
            },
        },
    }
    if system_instruction:
        setup["systemInstruction"] = {
            "role": "user",
            "parts": [{"text": system_instruction}],
        }
    if tools:
        setup["tools"] = [{"functionDeclarations": list(tools)}]
    return {"setup": setup}


class LiveConnection:
    """One BidiGenerateContent session. Not reusable after close()."""

    def __init__(self, api_key: str, model: str, system_instruction: str = "",
                 tools: list = None, voice: str = "Aoede", connect=None):
        self.api_key = api_key
        self.model = model
        self.system_instruction = system_instruction
        self.tools = tools or []
        self.voice = voice
        self._connect = connect or websockets.connect
        self.ws = None
        self.closed = False

    @property
    def url(self) -> str:
        return f"{LIVE_URL}?key={self.api_key}"

    async def open(self):
        """Connect, send setup, and wait for setupComplete."""
        try:
            self.ws = await self._connect(self.url, ping_interval=20, max_size=None)
            await self._send(build_setup_message(
                self.model, self.system_instruction, self.tools, self.voice))
            raw = await self.ws.recv()
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"Handshake failed: {e}") from e

        try:
            resp = json.loads(raw)
        except ValueError as e:
            raise TransportError("Handshake reply was not JSON") from e
        if "setupComplete" not in resp:
            raise TransportError(f"Setup rejected: {json.dumps(resp)[:200]}")
        logger.info("Live session configured (%s, voice %s)", self.model, self.voice)

    async def _send(self, payload: dict):
        if self.ws is None or self.closed:
            raise TransportError("Connection is not open")
        await self.ws.send(json.dumps(payload))

    async def send_client_content(self, text: str, turn_complete: bool = True):
        await self._send({
            "clientContent": {
                "turns": [{"role": "user", "parts": [{"text": text}]}],
                "turnComplete": turn_complete,
            }
        })

    async def send_realtime_audio(self, pcm: bytes, mime_type: str = CAPTURE_MIME_TYPE):
        await self._send({
            "realtimeInput": {
                "audio": {"data": base64_encode(pcm), "mimeType": mime_type},
            }
        })

    async def send_tool_response(self, function_responses: list[dict]):
        await self._send({"toolResponse": {"functionResponses": function_responses}})

    async def events(self):
        """Yield SessionEvents in arrival order, ending with CLOSED or ERRORED."""
        try:
            async for raw in self.ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Dropping non-JSON server message")
                    continue
                for event in parse_server_message(message):
                    yield event
        except websockets.exceptions.ConnectionClosedOK:
            pass
        except websockets.exceptions.ConnectionClosedError as e:
            yield SessionEvent(EventType.ERRORED, data=e)
            return
        yield SessionEvent(EventType.CLOSED)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        if self.ws is not None:
            ws, self.ws = self.ws, None
            await ws.close()
