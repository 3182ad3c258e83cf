"""
Configuration management for the storefront checkout service.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
import boto3
from typing import Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Application settings
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "storefront")
    REGION: str = os.getenv("REGION", "ap-southeast-1")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Redis settings
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_SSL: bool = _env_bool("REDIS_SSL", "false")

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50

    # Cart settings
    MAX_ITEMS_PER_CART: int = int(os.getenv("MAX_ITEMS_PER_CART", "200"))
    MAX_QUANTITY_PER_ITEM: int = int(os.getenv("MAX_QUANTITY_PER_ITEM", "99"))

    # Checkout settings
    CHECKOUT_SESSION_TTL_SECONDS: int = int(os.getenv("CHECKOUT_SESSION_TTL_SECONDS", str(15 * 60)))
    # Expired and completed sessions stay readable this long so retries get a meaningful answer
    CHECKOUT_SESSION_RETENTION_SECONDS: int = int(os.getenv("CHECKOUT_SESSION_RETENTION_SECONDS", str(60 * 60)))

    # Payment gateway settings
    PAYMENT_TIMEOUT_MS: int = int(os.getenv("PAYMENT_TIMEOUT_MS", "45000"))
    PAYMENT_MIN_LATENCY_MS: int = int(os.getenv("PAYMENT_MIN_LATENCY_MS", "500"))
    PAYMENT_MAX_LATENCY_MS: int = int(os.getenv("PAYMENT_MAX_LATENCY_MS", "2000"))
    PAYMENT_FAILURE_RATE: float = float(os.getenv("PAYMENT_FAILURE_RATE", "0.1"))

    # Notification settings
    NOTIFICATION_BACKEND: str = os.getenv("NOTIFICATION_BACKEND", "log")  # "log" or "ses"
    NOTIFICATION_FROM_ADDRESS: str = os.getenv("NOTIFICATION_FROM_ADDRESS", "orders@example.com")

    @classmethod
    def load_redis_secrets(cls) -> None:
        """Load Redis authentication token from AWS Secrets Manager"""
        if cls.REDIS_AUTH_TOKEN:
            return  # Already loaded from environment

        secret_name = os.getenv("REDIS_SECRET_NAME")
        if not secret_name:
            return  # No secret name provided, use no auth

        try:
            client = boto3.client("secretsmanager", region_name=cls.REGION)
            response = client.get_secret_value(SecretId=secret_name)
            secret_data = json.loads(response["SecretString"])

            cls.REDIS_AUTH_TOKEN = secret_data.get("auth_token")
            if "endpoint" in secret_data:
                cls.REDIS_HOST = secret_data["endpoint"]
            # Secrets Manager endpoints are ElastiCache clusters with in-transit encryption
            cls.REDIS_SSL = True
        except Exception as e:
            logger.warning(f"Could not load Redis secrets from Secrets Manager: {e}")
            # Continue without auth token (may fail on connection)

# Load secrets at module import
Config.load_redis_secrets()
