#!/usr/bin/env python3
"""Telegram webhook relay for the Whales Pump bot.

Telegram POSTs each update here. Every reply carries a persistent keyboard
whose single button opens the Live Support Center web app.

Modes (config "telegram_mode"):
  redirect   any text gets the "use the button" notice
  assistant  text is answered by the hosted model with the agent instruction
"""

import http.server
import json
import logging

import httpx
from google import genai
from google.genai import types as genai_types

from config import DEFAULTS, load_system_instruction

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"

WELCOME_TEXT = ("Welcome to Whales Pump Support! 🐋\n\n"
                "To verify your account, send screenshots, or chat with our AI agent, "
                "please click the **Live Support Center** button below.")
REDIRECT_TEXT = ("⚠️ Please DO NOT message here.\n\n"
                 "Use the **Live Support Center** button below to access support.")
AGENT_ERROR_TEXT = "Sorry, something went wrong."


class TelegramRelay:
    """Turns one webhook request into at most one sendMessage call."""

    def __init__(self, bot_token: str, config: dict = None, api_key: str = None,
                 http_client: httpx.Client = None, genai_client=None):
        self.bot_token = bot_token
        self.config = {**DEFAULTS, **(config or {})}
        self.api_key = api_key
        self.mode = self.config["telegram_mode"]
        self._http = http_client or httpx.Client(timeout=10.0)
        self._genai = genai_client
        self._system_instruction = load_system_instruction(self.config)

    def keyboard(self) -> dict:
        return {
            "keyboard": [[{
                "text": "Live Support Center",
                "web_app": {"url": self.config["web_app_url"]},
            }]],
            "resize_keyboard": True,
            "persistent": True,
        }

    def send_message(self, chat_id, text: str):
        url = f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage"
        resp = self._http.post(url, json={
            "chat_id": chat_id,
            "text": text,
            "reply_markup": self.keyboard(),
        })
        resp.raise_for_status()

    def ask_agent(self, text: str) -> str:
        if self._genai is None:
            self._genai = genai.Client(api_key=self.api_key)
        try:
            response = self._genai.models.generate_content(
                model=self.config["chat_model"],
                contents=text,
                config=genai_types.GenerateContentConfig(system_instruction=self._system_instruction),
            )
        except Exception as e:
            logger.error("Agent reply failed: %s", e)
            return AGENT_ERROR_TEXT
        return response.text or AGENT_ERROR_TEXT

    def handle_update(self, method: str, body: bytes) -> tuple[int, str]:
        """Returns (HTTP status, response body)."""
        if method != "POST":
            return 405, "Method Not Allowed"

        try:
            update = json.loads(body or b"{}")
            message = update.get("message")
            if not message:
                return 200, "OK"

            chat_id = message["chat"]["id"]
            text = message.get("text")

            if text == "/start":
                self.send_message(chat_id, WELCOME_TEXT)
            elif text:
                if self.mode == "assistant":
                    self.send_message(chat_id, self.ask_agent(text))
                else:
                    self.send_message(chat_id, REDIRECT_TEXT)
            return 200, "OK"

        except Exception as e:
            logger.error("Error processing webhook: %s", e)
            return 500, "Internal Server Error"


def make_handler(relay: TelegramRelay):
    class WebhookHandler(http.server.BaseHTTPRequestHandler):
        def _reply(self, status: int, text: str):
            body = text.encode()
            self.send_response(status)
            self.send_header('Content-Type', 'text/plain')
            self.send_header('Content-Length', len(body))
            self.end_headers()
            self.wfile.write(body)

        def do_POST(self):
            length = int(self.headers.get('Content-Length', 0))
            body = self.rfile.read(length) if length else b''
            self._reply(*relay.handle_update("POST", body))

        def do_GET(self):
            self._reply(*relay.handle_update("GET", b''))

        def log_message(self, fmt, *args):
            logger.debug("webhook: " + fmt, *args)

    return WebhookHandler


def serve(relay: TelegramRelay, port: int = None, host: str = '0.0.0.0'):
    port = port or relay.config["telegram_port"]
    server = http.server.HTTPServer((host, port), make_handler(relay))
    logger.info("Telegram relay (%s mode) listening on http://%s:%d", relay.mode, host, port)
    try:
        server.serve_forever()
    finally:
        server.server_close()
