"""Text chat with the Whales Pump agent (google-genai chats API).

Request -> optional function-call rounds through ToolDispatcher -> final text.
Replies and error notices are appended to the shared ChatTranscript; the
UI only renders the transcript.
"""

import asyncio
import logging

import httpx
from google import genai
from google.genai import types as genai_types

from business_tools import ToolDispatcher
from chat_transcript import AGENT, USER, ChatTranscript
from config import DEFAULTS, MISSING_KEY_MESSAGE, is_valid_key, load_system_instruction

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Sorry, something went wrong."
NETWORK_ERROR = "Network Error: Please check your internet connection. Retrying might help."

# Failures that mean the cached chat may be dead
NETWORK_ERRORS = (httpx.TransportError, ConnectionError, asyncio.TimeoutError)

MAX_TOOL_ROUNDS = 5


def media_label(mime_type: str) -> str:
    if mime_type.startswith("image/"):
        return "📷 Screenshot"
    if mime_type.startswith("audio/"):
        return "🎤 Voice message"
    return "📎 Attachment"


class TextChat:
    """Lazily created chat session. reset() drops it so the next send starts fresh."""

    def __init__(self, api_key, transcript: ChatTranscript, dispatcher: ToolDispatcher = None,
                 config: dict = None, client_factory=None):
        self.api_key = api_key
        self.transcript = transcript
        self.config = {**DEFAULTS, **(config or {})}
        self.dispatcher = dispatcher or ToolDispatcher(transcript, self.config)
        self._client_factory = client_factory or (lambda key: genai.Client(api_key=key))
        self._chat = None

    def _generate_config(self) -> genai_types.GenerateContentConfig:
        declarations = [genai_types.FunctionDeclaration(**decl) for decl in self.dispatcher.declarations]
        return genai_types.GenerateContentConfig(
            system_instruction=load_system_instruction(self.config),
            tools=[genai_types.Tool(function_declarations=declarations)],
            automatic_function_calling=genai_types.AutomaticFunctionCallingConfig(disable=True),
        )

    def _ensure_chat(self):
        if self._chat is None:
            client = self._client_factory(self.api_key)
            self._chat = client.aio.chats.create(
                model=self.config["chat_model"],
                config=self._generate_config(),
            )
        return self._chat

    def reset(self):
        self._chat = None

    async def send(self, text: str = None, media: bytes = None, mime_type: str = ""):
        """Send one user turn. Returns the agent ChatMessage, or None on failure."""
        text = (text or "").strip()
        if not text and not media:
            return None

        self.transcript.add(USER, text or media_label(mime_type),
                            attachment_mime=mime_type if media else None)

        if not is_valid_key(self.api_key):
            self.transcript.add(AGENT, MISSING_KEY_MESSAGE)
            return None

        try:
            chat = self._ensure_chat()
            if media:
                message = [genai_types.Part.from_bytes(data=media, mime_type=mime_type)]
                if text:
                    message.append(genai_types.Part(text=text))
            else:
                message = text

            response = await chat.send_message(message)

            rounds = 0
            while response.function_calls and rounds < MAX_TOOL_ROUNDS:
                rounds += 1
                replies = []
                for fc in response.function_calls:
                    result = await self.dispatcher.dispatch(fc.name, dict(fc.args or {}))
                    replies.append(genai_types.Part(
                        function_response=genai_types.FunctionResponse(
                            id=fc.id, name=fc.name, response={"result": result})))
                response = await chat.send_message(replies)

            if response.text:
                return self.transcript.add(AGENT, response.text)
            return None

        except NETWORK_ERRORS as e:
            logger.error("Chat network failure: %s", e)
            self.reset()
            self.transcript.add(AGENT, NETWORK_ERROR)
        except Exception as e:
            logger.error("Chat failure: %s", e)
            self.transcript.add(AGENT, GENERIC_ERROR)
        return None
