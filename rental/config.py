import os
import logging
from dotenv import load_dotenv

load_dotenv()


def _int_list(raw: str) -> list:
    return [int(x.strip()) for x in raw.split(",") if x.strip() and x.strip().isdigit()]


class Config:
    # Database Configuration
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_PASS = os.getenv("DB_PASS", "postgres")
    DB_HOST = os.getenv("DB_HOST", "localhost")
    DB_PORT = os.getenv("DB_PORT", "5432")
    DB_NAME = os.getenv("DB_NAME", "house_rent")

    @property
    def DATABASE_URL(self):
        # Prefer DATABASE_URL env var if set (for SQLite support)
        url = os.getenv("DATABASE_URL")
        if url:
            return url

        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # PayOS gateway (OPTIONAL at import, required once a client is built)
    PAYOS_CLIENT_ID = os.getenv("PAYOS_CLIENT_ID")
    PAYOS_API_KEY = os.getenv("PAYOS_API_KEY")
    PAYOS_CHECKSUM_KEY = os.getenv("PAYOS_CHECKSUM_KEY")
    PAYOS_BASE_URL = os.getenv("PAYOS_BASE_URL", "https://api-merchant.payos.vn")
    PAYOS_TIMEOUT = float(os.getenv("PAYOS_TIMEOUT", "15"))

    # Return/cancel pages of the tenant web app
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")

    # Seeded payment methods
    TRANSFER_PAYMENT_METHOD_ID = int(os.getenv("TRANSFER_PAYMENT_METHOD_ID", "1"))
    CASH_PAYMENT_METHOD_ID = int(os.getenv("CASH_PAYMENT_METHOD_ID", "2"))

    # Audit id stamped by scheduled jobs
    SYSTEM_USER_ID = int(os.getenv("SYSTEM_USER_ID", "1"))

    # Scheduler
    CONTRACT_SWEEP_HOUR = int(os.getenv("CONTRACT_SWEEP_HOUR", "0"))
    EXPIRY_NOTICE_DAYS = _int_list(os.getenv("EXPIRY_NOTICE_DAYS", "30,15,7"))

    # Telegram push channel for notifications (OPTIONAL)
    TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")

    # Inbound webhook listener
    WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")
    WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", "8080"))

config = Config()

# Log configuration on startup
logging.info(f"Database: {config.DATABASE_URL.split('@')[1] if '@' in config.DATABASE_URL else 'SQLite'}")
logging.info(f"PayOS: {'configured' if config.PAYOS_CLIENT_ID else 'not configured'}")
logging.info(f"Telegram push: {'enabled' if config.TELEGRAM_BOT_TOKEN else 'disabled'}")
