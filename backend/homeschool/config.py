"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    JWT_SECRET: str
    MAX_UPLOAD_BYTES: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    DATABASE_URL: str
    MEDIA_ROOT: Path
    KIDS_MODE_IP_MAX_ATTEMPTS: int
    KIDS_MODE_USER_MAX_ATTEMPTS: int
    KIDS_MODE_RATE_WINDOW_SECONDS: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))  # 10 MB default
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.DATABASE_URL = os.getenv("HOMESCHOOL_DATABASE_URL", f"sqlite:///{BASE / 'homeschool.db'}")
        self.MEDIA_ROOT = Path(os.getenv("HOMESCHOOL_MEDIA_ROOT", str(BASE / "media")))
        # kids mode exit PIN throttling
        self.KIDS_MODE_IP_MAX_ATTEMPTS = int(os.getenv("KIDS_MODE_IP_MAX_ATTEMPTS", "10"))
        self.KIDS_MODE_USER_MAX_ATTEMPTS = int(os.getenv("KIDS_MODE_USER_MAX_ATTEMPTS", "5"))
        self.KIDS_MODE_RATE_WINDOW_SECONDS = int(os.getenv("KIDS_MODE_RATE_WINDOW_SECONDS", "3600"))
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if min(self.KIDS_MODE_IP_MAX_ATTEMPTS, self.KIDS_MODE_USER_MAX_ATTEMPTS, self.KIDS_MODE_RATE_WINDOW_SECONDS) <= 0:
            raise RuntimeError("kids mode rate limits must be positive")


settings = Settings()
