import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Optional

from rental.config import config
from rental.database.core import AsyncSessionLocal
from rental.services.contract_service import expire_outdated_contracts, notify_expiring_contracts
from rental.services.notification_service import notification_service


async def daily_contract_job(today: Optional[date] = None, session_factory=AsyncSessionLocal):
    """Expire or renew outdated contracts, then send the expiry reminders"""
    logging.info("Running daily contract job...")
    today = today or date.today()

    async with session_factory() as session:
        try:
            result = await expire_outdated_contracts(session, today)
            logging.info(f"Expired contracts: {result.expired_ids}, renewed: {result.renewed_ids}")
        except Exception as e:
            logging.error(f"Contract sweep failed: {e}")
            await notification_service.notify_all_admins(
                session, "system",
                f"The daily contract sweep for {today} failed: {e}",
                "/contracts?status=active",
            )

    # Reminders run in their own session so a failed sweep does not block them
    async with session_factory() as session:
        try:
            await notify_expiring_contracts(session, today)
        except Exception as e:
            logging.error(f"Expiry reminders failed: {e}")
            await session.rollback()

    logging.info("Daily contract job finished.")


async def scheduler_loop():
    """Run the contract job once a day at CONTRACT_SWEEP_HOUR:00."""
    logging.info("Scheduler started.")

    # Initial delay to settle startup
    await asyncio.sleep(10)

    while True:
        try:
            now = datetime.now()
            today_target = now.replace(hour=config.CONTRACT_SWEEP_HOUR, minute=0, second=0, microsecond=0)

            if now < today_target:
                next_run = today_target
            else:
                next_run = today_target + timedelta(days=1)

            wait_seconds = (next_run - now).total_seconds()
            logging.info(f"Next contract job at {next_run} (in {wait_seconds/3600:.1f}h)")

            await asyncio.sleep(wait_seconds)

            await daily_contract_job()

            # Buffer to skip current minute
            await asyncio.sleep(60)

        except Exception as e:
            logging.error(f"Error in scheduler loop: {e}")
            await asyncio.sleep(60) # Prevent tight loop on error
