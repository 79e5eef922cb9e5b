# config.py
import os

from dotenv import load_dotenv

load_dotenv()


def _engine_options(uri: str, timeout: int) -> dict:
    # connect timeout in seconds for the drivers we deploy on
    if uri.startswith("postgresql"):
        return {"pool_pre_ping": True, "connect_args": {"connect_timeout": timeout}}
    if uri.startswith("sqlite"):
        return {"connect_args": {"timeout": timeout}}
    return {}


class Config:
    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///campus_market.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options(SQLALCHEMY_DATABASE_URI, DB_CONNECT_TIMEOUT)

    # Identity tokens are issued elsewhere, we only verify them
    JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
    JWT_ALGO = "HS256"

    # OTP hand-off
    OTP_TTL_MINUTES = int(os.getenv("OTP_TTL_MINUTES", "30"))
    OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "3"))
    OTP_HASH_METHOD = os.getenv("OTP_HASH_METHOD", "scrypt")

    # Reservation sweep (0 = background thread disabled, CLI still works)
    RESERVATION_TIMEOUT_MINUTES = int(os.getenv("RESERVATION_TIMEOUT_MINUTES", "1440"))
    RESERVATION_SWEEP_INTERVAL_SECONDS = int(os.getenv("RESERVATION_SWEEP_INTERVAL_SECONDS", "0"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
