"""
Menu Service — the storefront content the bot sends.

Menus are button messages (three buttons each); links are formatted
text cards ending in a URL.  All URLs come from ``StoreLinks`` so a
deployment can point them elsewhere without touching content.

Every send returns a SendEffect; the router uses its message id for the
audit trail and its success flag to decide whether a reply went out.
"""

from __future__ import annotations

import logging
from typing import NamedTuple, Optional

from pydantic import BaseModel, Field

from kaapav import settings
from kaapav.pipeline.channels import (
    DeliveryResult,
    DispatcherRegistry,
    MessageKind,
    OutboundMessage,
)

logger = logging.getLogger("pipeline.menus")

RULE = "═══════════════════════════"
SIGNATURE = "💎 KAAPAV Fashion Jewellery"


class StoreLinks(BaseModel):
    website: str = Field(default_factory=lambda: settings.WEBSITE_URL)
    catalog: str = Field(default_factory=lambda: settings.CATALOG_URL)
    wa_me_chat: str = Field(default_factory=lambda: settings.WAME_CHAT_URL)
    bestsellers: str = Field(default_factory=lambda: settings.BESTSELLERS_URL)
    payment: str = Field(default_factory=lambda: settings.PAYMENT_URL)
    tracking: str = Field(default_factory=lambda: settings.TRACKING_URL)
    facebook: str = Field(default_factory=lambda: settings.FACEBOOK_URL)
    instagram: str = Field(default_factory=lambda: settings.INSTAGRAM_URL)


class SendEffect(BaseModel):
    """What a send produced, as far as the pipeline cares."""

    success: bool
    kind: MessageKind
    body: str
    buttons: list[dict[str, str]] = Field(default_factory=list)
    message_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def record_type(self) -> str:
        return "buttons" if self.kind == MessageKind.BUTTONS else self.kind.value


class Menu(NamedTuple):
    body: str
    footer: str
    buttons: list[tuple[str, str]]


class LinkCard(NamedTuple):
    emoji: str
    title: str
    tagline: str
    points: tuple[str, str, str]
    cta: str
    link: str  # StoreLinks field name


_BACK = ("MAIN_MENU", "🏠 Back")

MENUS: dict[str, Menu] = {
    "main": Menu(
        f"{RULE}\n   ✨ *KAAPAV Fashion Jewellery* ✨\n {RULE}\n\n"
        "👑 Crafted for Royalty\n\n💎 Timeless elegance\n✨ Stunning designs\n"
        "🎁 Perfect gifting\n\nSelect below 👇",
        "💖 Where Luxury Meets You",
        [("JEWELLERY_MENU", "💎 Jewellery"), ("CHAT_MENU", "💬 Chat with Us"),
         ("OFFERS_MENU", "🎁 Offers")],
    ),
    "jewellery": Menu(
        f"{RULE}\n   💎 *Our Collections* 💎\n{RULE}\n\n"
        "👑 Curated for You\n\n✨ Handcrafted pieces\n🎀 Gift-ready packaging\n"
        "💝 Made with love\n\nExplore now 👇",
        "🌐 kaapav.com",
        [("OPEN_WEBSITE", "🌐 Website"), ("OPEN_CATALOG", "📱 Catalogue"), _BACK],
    ),
    "offers": Menu(
        f"{RULE}\n   🎁 *Exclusive Offers* 🎁\n{RULE}\n\n"
        "👑 Limited Time Only\n\n🔥 Flat 50% OFF\n🚚 Free shipping ₹498+\n"
        "⚡ Hurry, grab yours!\n\nShop now 👇",
        "✨ Don't miss out!",
        [("OPEN_BESTSELLERS", "🛍️ Bestsellers"), ("PAYMENT_MENU", "💳 Pay & Track"), _BACK],
    ),
    "payment": Menu(
        f"{RULE}\n   💳 *Payment & Tracking* 💳\n{RULE}\n\n"
        "👑 Secure & Easy\n\n🏦 UPI / Cards / Netbanking\n✅ Instant confirmation\n"
        "📦 Track your order\n\n⚠️ COD not available\n\nChoose below 👇",
        "🔒 100% Secure",
        [("PAY_NOW", "💳 Pay Now"), ("TRACK_ORDER", "📦 Track Order"), _BACK],
    ),
    "chat": Menu(
        f"{RULE}\n   💬 *We're Here to Help* 💬\n{RULE}\n\n"
        "👑 Personal Assistance\n\n👗 Styling advice\n📋 Order support\n"
        "⚡ Quick response\n\nHow can we help? 👇",
        "💝 At your service",
        [("CHAT_NOW", "💬 Chat Now"), ("SOCIAL_MENU", "📱 Follow Us"), _BACK],
    ),
    "social": Menu(
        f"{RULE}\n   📱 *Join Our World* 📱\n{RULE}\n\n"
        "👑 Stay Connected\n\n🆕 New launches\n🎁 Exclusive offers\n"
        "💕 Behind the scenes\n\nFollow us 👇",
        "✨ Be part of KAAPAV",
        [("OPEN_FACEBOOK", "👍 Facebook"), ("OPEN_INSTAGRAM", "📷 Instagram"), _BACK],
    ),
}

LINK_CARDS: dict[str, LinkCard] = {
    "website": LinkCard("🌐", "Visit Our Website", "Complete Collection",
                        ("💎 Latest arrivals", "🛍️ Exclusive designs", "✨ Easy shopping"),
                        "Explore now", "website"),
    "catalog": LinkCard("📱", "WhatsApp Catalogue", "Quick Browse & Order",
                        ("👆 Tap to view", "💝 Easy selection", "🛒 Instant order"),
                        "Browse now", "catalog"),
    "bestsellers": LinkCard("🛍️", "Bestselling Pieces", "Customer Favorites",
                            ("❤️ Most loved designs", "🔥 Trending now", "⚡ Limited stock!"),
                            "Shop now", "bestsellers"),
    "payment": LinkCard("💳", "Secure Payment", "100% Safe Checkout",
                        ("🏦 UPI / Cards / Netbanking", "✅ Instant confirmation", "🔒 Secure & trusted"),
                        "Pay now", "payment"),
    "tracking": LinkCard("📦", "Track Your Order", "Real-Time Updates",
                         ("📍 Live tracking", "🚚 Delivery status", "⏰ ETA updates"),
                         "Track here", "tracking"),
}

# Short replies for TEXT actions; {placeholders} are StoreLinks fields
TEXT_REPLIES: dict[str, str] = {
    "chat_now": "💬 Chat with our team:\n{wa_me_chat}",
    "facebook": "📘 Follow us on Facebook:\n{facebook}",
    "instagram": "📸 Follow us on Instagram:\n{instagram}",
    "show_list": "📜 Our collections are being updated.\n\nExplore:\n{website}",
}


class MenuService:
    """Renders storefront content and sends it through the dispatcher registry."""

    def __init__(
        self,
        dispatchers: DispatcherRegistry,
        links: StoreLinks | None = None,
    ) -> None:
        self._dispatchers = dispatchers
        self.links = links or StoreLinks()

    # ── Rendering ──

    def render_link(self, key: str) -> str:
        card = LINK_CARDS[key]
        url = getattr(self.links, card.link)
        points = "\n".join(card.points)
        return (
            f"{RULE}\n{card.emoji} *{card.title}*\n{RULE}\n\n"
            f"👑 {card.tagline}\n\n{points}\n\n"
            f"{card.cta}:\n{url}\n\n{RULE}\n{SIGNATURE}"
        )

    def render_text(self, key: str) -> str:
        return TEXT_REPLIES[key].format(**self.links.model_dump())

    # ── Sending ──

    async def send_menu(self, conversation_id: str, language: str, menu_name: str) -> SendEffect:
        menu = MENUS.get(menu_name)
        if menu is None:
            logger.warning("Unknown menu '%s', sending main menu", menu_name)
            menu = MENUS["main"]
        buttons = [{"id": bid, "title": title} for bid, title in menu.buttons]
        message = OutboundMessage(
            recipient=conversation_id,
            kind=MessageKind.BUTTONS,
            body=menu.body,
            buttons=buttons,
            footer=menu.footer,
            metadata={"lang": language, "menu": menu_name},
        )
        return self._effect(message, await self._dispatchers.dispatch(message))

    async def send_link(self, conversation_id: str, language: str, link_key: str) -> SendEffect:
        if link_key not in LINK_CARDS:
            logger.warning("Unknown link '%s', sending main menu", link_key)
            return await self.send_menu(conversation_id, language, "main")
        return await self.send_text(conversation_id, self.render_link(link_key),
                                    language=language)

    async def send_text(
        self, conversation_id: str, body: str, *, language: str = "en",
    ) -> SendEffect:
        message = OutboundMessage(
            recipient=conversation_id,
            kind=MessageKind.TEXT,
            body=body,
            metadata={"lang": language},
        )
        return self._effect(message, await self._dispatchers.dispatch(message))

    @staticmethod
    def _effect(message: OutboundMessage, result: DeliveryResult) -> SendEffect:
        return SendEffect(
            success=result.success,
            kind=message.kind,
            body=message.body,
            buttons=message.buttons,
            message_id=result.message_id,
            error=result.error,
        )
