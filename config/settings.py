"""
Application settings and configuration
"""
import logging
import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


class Settings:
    # Application
    APP_NAME = os.getenv("APP_NAME", "Pet Hotel Booking Engine")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Payments
    PREPAYMENT_RATIO = Decimal(os.getenv("PREPAYMENT_RATIO", "0.30"))
    ROUNDING_TOLERANCE = Decimal(os.getenv("ROUNDING_TOLERANCE", "0.01"))
    CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "₽")


settings = Settings()

logging.getLogger("pet_hotel").setLevel(settings.LOG_LEVEL)
