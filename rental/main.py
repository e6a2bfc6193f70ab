import asyncio
import logging
import sys

from aiogram import Bot
from aiogram.enums import ParseMode
from aiogram.client.default import DefaultBotProperties
from aiohttp import web

from rental.config import config
from rental.cron import scheduler_loop
from rental.services.notification_service import setup_notifications
from rental.webhook import create_app


async def main():
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        stream=sys.stdout,
    )

    # Telegram push channel is optional; notifications are stored either way
    bot = None
    if config.TELEGRAM_BOT_TOKEN:
        bot = Bot(
            token=config.TELEGRAM_BOT_TOKEN,
            default=DefaultBotProperties(parse_mode=ParseMode.HTML)
        )
        setup_notifications(bot)

    # Start Scheduler
    scheduler = asyncio.create_task(scheduler_loop())

    runner = web.AppRunner(create_app())
    await runner.setup()
    site = web.TCPSite(runner, config.WEBHOOK_HOST, config.WEBHOOK_PORT)
    await site.start()
    logging.info(f"Webhook listener on {config.WEBHOOK_HOST}:{config.WEBHOOK_PORT}")

    try:
        await asyncio.Event().wait()
    finally:
        scheduler.cancel()
        await runner.cleanup()
        if bot:
            await bot.session.close()

if __name__ == "__main__":
    try:
        if sys.platform == "win32":
            asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Service stopped.")
