"""Configuration and credentials for the Whales Pump support agent.

config.json beside this file is merged over DEFAULTS. Credentials never
live in config.json; they come from the environment or key files.
"""

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILE = Path(__file__).parent / "config.json"

DEFAULTS = {
    "live_model": "gemini-2.5-flash-native-audio-preview-09-2025",
    "chat_model": "gemini-2.5-flash",
    "voice": "Aoede",
    "greeting_trigger": "Hello",
    "capture_sample_rate": 16000,
    "playback_sample_rate": 24000,
    "capture_frame_size": 4096,
    "handshake_timeout": 15.0,
    "tool_timeout": 10.0,
    "eligibility_threshold": 5000,
    "fee_ratio": 0.5,
    "vip_entry_price": 300,
    "admin_contact": "@Binance_Share_Trading",
    "system_instruction_file": "",
    "telegram_mode": "redirect",
    "web_app_url": "https://binancesharetrading.netlify.app",
    "telegram_port": 8443,
    "log_dir": "~/.local/share/whales-pump/calls",
}

DEFAULT_SYSTEM_INSTRUCTION = """\
You are a respectful and professional sales representative for "Whales Pump Share Trading".
Greet with "Assalamu Alaikum wa Rahmatullah". Be polite, humble and transparent.
You speak Bengali and English.

Help customers choose a package:
- VIP Membership (signals): 1 month $300, 3 months $600, 6 months $800, 12 months $1000.
- Share Trading Signal (profit sharing): minimum $5,000 capital, proven by a balance
  screenshot. Fee is 50% of profit.

Use check_eligibility and calculate_profit_share for numbers. Call provide_admin_contact
only when the user confirms a VIP purchase or a screenshot shows at least $5,000.
Never give out the admin contact otherwise. Only discuss Whales Pump business.
"""

API_KEY_ENV_VARS = ("GEMINI_API_KEY", "API_KEY")
API_KEY_FILES = (
    Path.home() / ".config" / "gemini" / "api_key",
    Path.home() / ".gemini" / "api_key",
)


MISSING_KEY_MESSAGE = "API Key is missing or invalid. Please check your settings."


class ConfigurationError(Exception):
    """Missing or invalid credential. Raised before any resource is touched."""


def is_valid_key(key) -> bool:
    return bool(key) and key.strip() not in ("", "undefined")


def load_config(path: Path = None) -> dict:
    """Load config.json merged over DEFAULTS. A bad file yields the defaults."""
    path = path or CONFIG_FILE
    config = dict(DEFAULTS)
    try:
        if path.exists():
            with open(path) as f:
                config.update(json.load(f))
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)
    return config


def get_api_key():
    """Gemini API key from env vars, then key files. None when absent."""
    for var in API_KEY_ENV_VARS:
        key = os.environ.get(var)
        if is_valid_key(key):
            return key.strip()
    for path in API_KEY_FILES:
        if path.exists():
            key = path.read_text().strip()
            if is_valid_key(key):
                return key
    return None


def require_api_key() -> str:
    key = get_api_key()
    if not is_valid_key(key):
        raise ConfigurationError(MISSING_KEY_MESSAGE)
    return key


def get_telegram_token():
    token = os.environ.get("TELEGRAM_BOT_TOKEN")
    return token.strip() if is_valid_key(token) else None


def load_system_instruction(config: dict) -> str:
    """System instruction text from system_instruction_file, else the built-in one."""
    path = config.get("system_instruction_file")
    if path:
        p = Path(path).expanduser()
        try:
            return p.read_text()
        except OSError as e:
            logger.warning("Cannot read system instruction %s: %s", p, e)
    return DEFAULT_SYSTEM_INSTRUCTION
