"""Whales Pump business tools callable by the hosted model.

Tools:
- check_eligibility: capital -> Share Trading verdict + recommendation
- calculate_profit_share: profit -> fixed-ratio split (default 50/50)
- provide_admin_contact: appends the admin contact card to the chat transcript

The same declarations and the same ToolDispatcher serve both the live voice
call and the text chat. dispatch() never raises: unknown tools and handler
failures come back as {"error": ...}.
"""

import inspect
import logging

from chat_transcript import AGENT, ChatTranscript

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 5000
DEFAULT_FEE_RATIO = 0.5
DEFAULT_VIP_PRICE = 300
DEFAULT_ADMIN_CONTACT = "@Binance_Share_Trading"

# ── Function declarations (Gemini schema) ──────────────────────────

CHECK_ELIGIBILITY_DECLARATION = {
    "name": "check_eligibility",
    "description": "Check which trading package the user is eligible for based on their capital.",
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "capital": {
                "type": "NUMBER",
                "description": "The user's available trading capital in USD.",
            },
        },
        "required": ["capital"],
    },
}

CALCULATE_PROFIT_SHARE_DECLARATION = {
    "name": "calculate_profit_share",
    "description": "Calculate the fee split for Option 1 (Share Trading Signal).",
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "profit": {
                "type": "NUMBER",
                "description": "The potential profit amount in USD.",
            },
        },
        "required": ["profit"],
    },
}

PROVIDE_ADMIN_CONTACT_DECLARATION = {
    "name": "provide_admin_contact",
    "description": ("Trigger this action to display the Admin Telegram ID card on the user's screen. "
                    "Use this ONLY when the user is verified eligible."),
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "reason": {
                "type": "STRING",
                "description": "The reason for providing contact (e.g., 'VIP Purchase' or 'Balance Verified').",
            },
        },
        "required": ["reason"],
    },
}

TOOL_DECLARATIONS = [
    CHECK_ELIGIBILITY_DECLARATION,
    CALCULATE_PROFIT_SHARE_DECLARATION,
    PROVIDE_ADMIN_CONTACT_DECLARATION,
]


def _format_usd(value) -> str:
    """5000.0 -> '5,000', 12.5 -> '12.5'."""
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}".rstrip('0').rstrip('.')


# ── Handlers ───────────────────────────────────────────────────────

def check_eligibility(capital, threshold=DEFAULT_THRESHOLD, vip_price=DEFAULT_VIP_PRICE) -> dict:
    capital = float(capital)
    if capital >= threshold:
        return {
            "result": "Eligible for Share Trading.",
            "eligible": True,
            "recommendation": (
                f"With over ${_format_usd(threshold)}, you are eligible for our Share Trading "
                "(50/50 split). Please upload a screenshot of your balance for verification."
            ),
        }
    return {
        "result": "NOT Eligible for Share Trading.",
        "eligible": False,
        "recommendation": (
            f"Your capital (${_format_usd(capital)}) is below the ${_format_usd(threshold)} requirement "
            f"for Share Trading. Please join our VIP Membership starting at ${_format_usd(vip_price)}."
        ),
    }


def calculate_profit_share(profit, fee_ratio=DEFAULT_FEE_RATIO) -> dict:
    profit = float(profit)
    fee = profit * fee_ratio
    keeps = profit - fee
    return {
        "totalProfit": profit,
        "ourFee": fee,
        "userKeeps": keeps,
        "message": (f"For a profit of ${_format_usd(profit)}, you will keep ${_format_usd(keeps)} "
                    f"and pay us ${_format_usd(fee)} as service fee."),
    }


def contact_card(admin_contact: str = DEFAULT_ADMIN_CONTACT) -> str:
    return ("🎉 **Congratulations! You are eligible.**\n\n"
            "☎️ **DM US For Full Access** 🌐\n"
            f"✉️ {admin_contact} ❤️")


def provide_admin_contact(transcript: ChatTranscript, reason: str = "",
                          admin_contact: str = DEFAULT_ADMIN_CONTACT) -> dict:
    transcript.add(AGENT, contact_card(admin_contact))
    logger.info("Admin contact shown (%s)", reason or "no reason given")
    return {"result": "Contact card successfully displayed on user screen."}


# ── Dispatch ───────────────────────────────────────────────────────

class ToolDispatcher:
    """Maps tool names from the model to the handlers above."""

    def __init__(self, transcript: ChatTranscript, config: dict = None):
        config = config or {}
        self.transcript = transcript
        self.threshold = config.get("eligibility_threshold", DEFAULT_THRESHOLD)
        self.fee_ratio = config.get("fee_ratio", DEFAULT_FEE_RATIO)
        self.vip_price = config.get("vip_entry_price", DEFAULT_VIP_PRICE)
        self.admin_contact = config.get("admin_contact", DEFAULT_ADMIN_CONTACT)

        self._handlers = {
            "check_eligibility": lambda args: check_eligibility(
                args["capital"], self.threshold, self.vip_price),
            "calculate_profit_share": lambda args: calculate_profit_share(
                args["profit"], self.fee_ratio),
            "provide_admin_contact": lambda args: provide_admin_contact(
                self.transcript, args.get("reason", ""), self.admin_contact),
        }

    @property
    def declarations(self) -> list[dict]:
        return list(TOOL_DECLARATIONS)

    def register(self, name: str, handler):
        """Add or replace a handler. handler(args) may be sync or async."""
        self._handlers[name] = handler

    async def dispatch(self, name: str, args: dict = None) -> dict:
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("Unknown tool requested: %s", name)
            return {"error": f"Unknown tool: {name}"}
        try:
            result = handler(args or {})
            if inspect.isawaitable(result):
                result = await result
            return result
        except KeyError as e:
            return {"error": f"Missing argument for {name}: {e.args[0]}"}
        except Exception as e:
            logger.error("Tool %s failed: %s", name, e)
            return {"error": str(e)}
