import logging
from typing import List, Optional

from telethon import Button, TelegramClient, events

from caret.bot.controller import ConversationController
from caret.bot.messages import Reply
from caret.config import settings

logger = logging.getLogger("caret.telegram")

PRIVATE_ONLY = "This bot can only be used in private chats (DMs)."


def to_markup(reply: Reply) -> Optional[List[List[Button]]]:
    if not reply.buttons:
        return None
    return [[Button.inline(label, data=data.encode()) for label, data in row] for row in reply.buttons]


def build_client(controller: ConversationController) -> TelegramClient:
    if not (settings.telegram_api_id and settings.telegram_api_hash and settings.telegram_bot_token):
        raise RuntimeError("TELEGRAM_API_ID / TELEGRAM_API_HASH / TELEGRAM_BOT_TOKEN is not configured")

    client = TelegramClient(settings.telegram_session, settings.telegram_api_id, settings.telegram_api_hash)

    @client.on(events.NewMessage(incoming=True))
    async def on_message(event):
        if not event.is_private:
            await event.reply(PRIVATE_ONLY)
            return
        try:
            reply = await controller.handle_text(event.sender_id, event.raw_text)
        except Exception:
            logger.exception(f"[telegram] message handler failed for {event.sender_id}")
            reply = Reply("❌ Something went wrong. Please try again.")
        await event.respond(reply.text, buttons=to_markup(reply), parse_mode="md")

    @client.on(events.CallbackQuery)
    async def on_callback(event):
        data = event.data.decode() if event.data else ""
        await event.answer()
        try:
            reply = await controller.handle_callback(event.sender_id, data)
        except Exception:
            logger.exception(f"[telegram] callback {data!r} failed for {event.sender_id}")
            reply = Reply("❌ Something went wrong. Please try again.")
        await event.respond(reply.text, buttons=to_markup(reply), parse_mode="md")

    return client


async def run_bot(controller: ConversationController) -> None:
    client = build_client(controller)
    await client.start(bot_token=settings.telegram_bot_token)
    logger.info("[telegram] bot started")
    await client.run_until_disconnected()
