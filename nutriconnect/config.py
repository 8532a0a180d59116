import os
import logging
from dotenv import load_dotenv

# Load env vars
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite://")

JWT_SECRET = os.getenv("JWT_SECRET", "mock_jwt_secret_for_development_only")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", 24))
REFRESH_EXPIRE_DAYS = int(os.getenv("REFRESH_EXPIRE_DAYS", 7))

# Order service -> payment service. Unset means payment sessions are not opened.
PAYMENT_SERVICE_URL = os.getenv("PAYMENT_SERVICE_URL")
PAYMENT_TIMEOUT = float(os.getenv("PAYMENT_TIMEOUT", 5))

PAYDPI_BASE_URL = os.getenv("PAYDPI_BASE_URL", "https://paydpi.gov.lk")
PAYDPI_MERCHANT_ID = os.getenv("PAYDPI_MERCHANT_ID", "MERCHANT_001")
PAYDPI_WEBHOOK_SECRET = os.getenv("PAYDPI_WEBHOOK_SECRET", "whsec_mock_secret_789")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

AUTH_PORT = int(os.getenv("AUTH_PORT", 3001))
ORDER_PORT = int(os.getenv("ORDER_PORT", 3002))
PAYMENT_PORT = int(os.getenv("PAYMENT_PORT", 3003))


def configure_logging():
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
