"""
Configuration management for the application.
"""

import os
from pathlib import Path


# Load .env file if it exists
try:
    from dotenv import load_dotenv

    # Load .env from project root
    env_path = Path(__file__).parent / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=True)
    else:
        # Try loading from current directory as fallback
        load_dotenv(override=True)
except ImportError:
    # python-dotenv not installed, skip loading .env
    pass


class Config:
    """Application configuration."""

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # API configuration
    CORS_ORIGINS: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")

    # Account database (identity collaborator)
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./accounts.db")

    # Shared keyed cache for multi-process deployments
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    @classmethod
    def is_production(cls) -> bool:
        return cls.ENVIRONMENT.lower() == "production"

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration."""
        from auth.config import AuthConfig

        if cls.is_production() and not os.getenv("AUTH_JWT_SECRET"):
            raise ValueError(
                "AUTH_JWT_SECRET not set. A stable signing secret is required in production.\n"
                "Set it in the .env file or as an environment variable."
            )
        if AuthConfig.OTP_GATEWAY == "stytch" and not (
            AuthConfig.STYTCH_PROJECT_ID and AuthConfig.STYTCH_SECRET
        ):
            raise ValueError(
                "OTP_GATEWAY=stytch requires STYTCH_PROJECT_ID and STYTCH_SECRET."
            )
        if cls.is_production() and AuthConfig.FIXED_OTP:
            raise ValueError("FIXED_OTP must not be set in production.")
