from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

_DEV_LINK_SECRET = "records-dev-link-secret"


def env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass(frozen=True)
class AppSettings:
    app_env: str
    frontend_url: str
    public_base_url: str
    cors_allow_origins: list[str]
    share_link_secret: str
    otp_expiry_minutes: int

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AppSettings":
        env = os.environ if environ is None else environ
        share_secret = (
            env.get("SHARE_LINK_SECRET", "").strip()
            or env.get("JWT_SHARED_SECRET", "").strip()
            or _DEV_LINK_SECRET
        )
        return cls(
            app_env=env.get("APP_ENV", "development").strip().lower() or "development",
            frontend_url=(env.get("FRONTEND_URL", "").strip() or "http://localhost:5173").rstrip("/"),
            public_base_url=(env.get("PUBLIC_BASE_URL", "").strip() or "http://localhost:8000").rstrip("/"),
            cors_allow_origins=split_csv(
                env.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
            ),
            share_link_secret=share_secret,
            otp_expiry_minutes=env_int(env, "OTP_EXPIRY_MINUTES", default=10, minimum=1),
        )
