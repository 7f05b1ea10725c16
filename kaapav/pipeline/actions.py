"""
Action table — the finite set of things a customer can ask the bot for.

Two ways in:
  normalize_action()   ids from button/list replies, tolerant of case
                       and punctuation ("Main_Menu!" → MAIN_MENU)
  match_keyword()      free text against an ordered regex table,
                       first match wins

Both are pure and return None when nothing applies.  The router owns
what to do with an unknown result (main menu).
"""

from __future__ import annotations

import re
from enum import Enum
from typing import NamedTuple, Optional


class Action(str, Enum):
    MAIN_MENU = "MAIN_MENU"
    JEWELLERY_MENU = "JEWELLERY_MENU"
    OFFERS_MENU = "OFFERS_MENU"
    PAYMENT_MENU = "PAYMENT_MENU"
    CHAT_MENU = "CHAT_MENU"
    SOCIAL_MENU = "SOCIAL_MENU"
    OPEN_WEBSITE = "OPEN_WEBSITE"
    OPEN_CATALOG = "OPEN_CATALOG"
    OPEN_BESTSELLERS = "OPEN_BESTSELLERS"
    PAY_NOW = "PAY_NOW"
    TRACK_ORDER = "TRACK_ORDER"
    CHAT_NOW = "CHAT_NOW"
    OPEN_FACEBOOK = "OPEN_FACEBOOK"
    OPEN_INSTAGRAM = "OPEN_INSTAGRAM"
    SHOW_LIST = "SHOW_LIST"


class Effect(str, Enum):
    MENU = "menu"   # send a menu, move the conversation into that flow
    LINK = "link"   # send a link card, state untouched
    TEXT = "text"   # send a short text, state untouched


class ActionSpec(NamedTuple):
    effect: Effect
    target: str               # menu name for MENU, link/text key otherwise
    flow: Optional[str] = None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  DISPATCH TABLE
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

ACTION_TABLE: dict[Action, ActionSpec] = {
    Action.MAIN_MENU: ActionSpec(Effect.MENU, "main", "main"),
    Action.JEWELLERY_MENU: ActionSpec(Effect.MENU, "jewellery", "jewellery"),
    Action.OFFERS_MENU: ActionSpec(Effect.MENU, "offers", "offers"),
    Action.PAYMENT_MENU: ActionSpec(Effect.MENU, "payment", "payment"),
    Action.CHAT_MENU: ActionSpec(Effect.MENU, "chat", "chat"),
    Action.SOCIAL_MENU: ActionSpec(Effect.MENU, "social", "social"),
    Action.OPEN_WEBSITE: ActionSpec(Effect.LINK, "website"),
    Action.OPEN_CATALOG: ActionSpec(Effect.LINK, "catalog"),
    Action.OPEN_BESTSELLERS: ActionSpec(Effect.LINK, "bestsellers"),
    Action.PAY_NOW: ActionSpec(Effect.LINK, "payment"),
    Action.TRACK_ORDER: ActionSpec(Effect.LINK, "tracking"),
    Action.CHAT_NOW: ActionSpec(Effect.TEXT, "chat_now"),
    Action.OPEN_FACEBOOK: ActionSpec(Effect.TEXT, "facebook"),
    Action.OPEN_INSTAGRAM: ActionSpec(Effect.TEXT, "instagram"),
    Action.SHOW_LIST: ActionSpec(Effect.TEXT, "show_list"),
}

DEFAULT_SPEC = ACTION_TABLE[Action.MAIN_MENU]


def spec_for(action: Action | None) -> ActionSpec:
    """Dispatch entry for an action; unknown/None falls back to main menu."""
    if action is None:
        return DEFAULT_SPEC
    return ACTION_TABLE.get(action, DEFAULT_SPEC)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ID NORMALISATION
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

# Aliases that older menus and deep links still send.  Keys are lowercase.
ID_ALIASES: dict[str, Action] = {
    "main_menu": Action.MAIN_MENU,
    "back": Action.MAIN_MENU,
    "back_main": Action.MAIN_MENU,
    "back_main_menu": Action.MAIN_MENU,
    "home": Action.MAIN_MENU,
    "start": Action.MAIN_MENU,
    "jewellery_menu": Action.JEWELLERY_MENU,
    "offers_menu": Action.OFFERS_MENU,
    "payment_menu": Action.PAYMENT_MENU,
    "payment_track": Action.PAYMENT_MENU,
    "chat_menu": Action.CHAT_MENU,
    "social_menu": Action.SOCIAL_MENU,
    "open_website": Action.OPEN_WEBSITE,
    "open_catalog": Action.OPEN_CATALOG,
    "open_bestsellers": Action.OPEN_BESTSELLERS,
    "bestsellers": Action.OPEN_BESTSELLERS,
    "pay_now": Action.PAY_NOW,
    "track_order": Action.TRACK_ORDER,
    "chat_now": Action.CHAT_NOW,
    "open_facebook": Action.OPEN_FACEBOOK,
    "open_instagram": Action.OPEN_INSTAGRAM,
    "show_list": Action.SHOW_LIST,
}

_NON_ID_CHARS = re.compile(r"[^a-z0-9_]")


def normalize_action(raw: str | None) -> Action | None:
    """
    Map a raw button/list id to an Action.

    Tries the lowercased id, then the id with everything outside
    ``[a-z0-9_]`` stripped.  Returns None if neither is known.
    """
    if not raw:
        return None
    key = str(raw).strip().lower()
    if key in ID_ALIASES:
        return ID_ALIASES[key]
    return ID_ALIASES.get(_NON_ID_CHARS.sub("", key))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  FREE-TEXT MATCHING
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

# Order matters: first match wins.
KEYWORD_TABLE: list[tuple[re.Pattern[str], Action]] = [
    (re.compile(r"\b(browse|shop|website|site|collection|categories?)\b", re.I), Action.JEWELLERY_MENU),
    (re.compile(r"\b(offer|discount|deal|sale|bestsellers?)\b", re.I), Action.OFFERS_MENU),
    (re.compile(r"\b(payment|pay|upi|card|netbanking|debit|credit|payment\s*menu)\b", re.I), Action.PAYMENT_MENU),
    (re.compile(r"\b(chat|help|support|agent|talk|assist)\b", re.I), Action.CHAT_MENU),
    (re.compile(r"\b(back|main\s*menu|menu|start|hi|hello|hey|namaste|vanakkam)\b", re.I), Action.MAIN_MENU),
    (re.compile(r"\b(best(?:seller)?s?|trending|top\s*picks?)\b", re.I), Action.OPEN_BESTSELLERS),
    (re.compile(r"\b(list|category\s*list|full\s*list)\b", re.I), Action.SHOW_LIST),
    (re.compile(r"\b(website|shop\s*now)\b", re.I), Action.OPEN_WEBSITE),
    (re.compile(r"\b(catalog|catalogue|whatsapp\s*catalog)\b", re.I), Action.OPEN_CATALOG),
    (re.compile(r"\b(track|tracking|order\s*status|where\s*.*order)\b", re.I), Action.TRACK_ORDER),
    (re.compile(r"\b(facebook|fb)\b", re.I), Action.OPEN_FACEBOOK),
    (re.compile(r"\b(insta|instagram)\b", re.I), Action.OPEN_INSTAGRAM),
    (re.compile(r"\b(social|follow|media)\b", re.I), Action.SOCIAL_MENU),
]


def match_keyword(text: str | None) -> Action | None:
    """First action whose pattern matches ``text``, or None."""
    if not text:
        return None
    for pattern, action in KEYWORD_TABLE:
        if pattern.search(text):
            return action
    return None


# "KP-12345", "kp12345", "order kp-0001 please"
ORDER_ID_PATTERN = re.compile(r"\bkp-?(\d{4,})\b", re.I)


def extract_order_id(text: str | None) -> str | None:
    """Canonical ``KP-<digits>`` order id mentioned in ``text``, if any."""
    if not text:
        return None
    m = ORDER_ID_PATTERN.search(text)
    if m is None:
        return None
    return f"KP-{m.group(1)}"
