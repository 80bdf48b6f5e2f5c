from __future__ import annotations

import html
import logging
import os
import re
import smtplib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any

import requests

from records.errors import NotificationError
from records.settings import env_bool, env_int

logger = logging.getLogger(__name__)

BRAND_NAME = "Bharat Records"


@dataclass(frozen=True)
class EmailConfig:
    host: str
    port: int
    secure: bool
    user: str
    password: str
    sender: str

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EmailConfig":
        env = os.environ if environ is None else environ
        user = env.get("EMAIL_USER", "").strip()
        return cls(
            host=env.get("EMAIL_HOST", "").strip(),
            port=env_int(env, "EMAIL_PORT", default=587, minimum=1),
            secure=env_bool(env, "EMAIL_SECURE", False),
            user=user,
            password=env.get("EMAIL_PASS", ""),
            sender=env.get("EMAIL_FROM", "").strip() or user,
        )


@dataclass(frozen=True)
class SmsConfig:
    api_url: str
    api_key: str
    timeout_s: int
    otp_expiry_minutes: int
    log_message_fallback: bool = True

    @property
    def configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SmsConfig":
        env = os.environ if environ is None else environ
        return cls(
            api_url=env.get("SMS_API_URL", "").strip().rstrip("/"),
            api_key=env.get("SMS_API_KEY", "").strip(),
            timeout_s=env_int(env, "SMS_TIMEOUT_S", default=15, minimum=1),
            otp_expiry_minutes=env_int(env, "OTP_EXPIRY_MINUTES", default=10, minimum=1),
            log_message_fallback=env.get("APP_ENV", "development").strip().lower() != "production",
        )


def _invitation_bodies(
    *,
    nominee_name: str,
    owner_name: str,
    invite_link: str,
    access_level: str,
    categories: Sequence[str],
) -> tuple[str, str]:
    level = access_level.upper()
    category_list = ", ".join(categories)
    text = f"""Hello {nominee_name},

{owner_name} has granted you access to their {BRAND_NAME} account.

Access Details:
- Access Level: {level}
- Document Categories: {category_list}

Accept Invitation:
{invite_link}

Important Notes:
- You must be logged in to accept this invitation
- You will only see documents the owner has permitted
- Access may be time-limited based on owner's settings

If you didn't expect this invitation, you can safely ignore this email.

---
{BRAND_NAME} - Secure Document Management
"""
    esc = html.escape
    body = f"""<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1 style="background: #3D1F8F; color: white; padding: 30px; text-align: center;">Account Access Invitation</h1>
    <p>Hello {esc(nominee_name)},</p>
    <p><strong>{esc(owner_name)}</strong> has granted you access to their {BRAND_NAME} account and documents.</p>
    <div style="background: white; padding: 15px; border-left: 4px solid #3D1F8F;">
      <p><strong>Access Details:</strong></p>
      <ul>
        <li><strong>Access Level:</strong> {esc(level)}</li>
        <li><strong>Document Categories:</strong> {esc(category_list)}</li>
      </ul>
    </div>
    <p>Click the button below to accept this invitation and start accessing their documents:</p>
    <p style="text-align: center;">
      <a href="{esc(invite_link, quote=True)}"
         style="background: #27ae60; color: white; padding: 15px 30px; text-decoration: none; border-radius: 8px;">
        Accept Invitation
      </a>
    </p>
    <p><strong>Important Notes:</strong></p>
    <ul>
      <li>You must be logged in to accept this invitation</li>
      <li>You will only see documents the owner has permitted</li>
      <li>Access may be time-limited based on owner's settings</li>
    </ul>
    <p>If you didn't expect this invitation, you can safely ignore this email.</p>
    <p style="text-align: center; color: #999; font-size: 12px;">
      This is an automated email from {BRAND_NAME}. Please do not reply to this email.
    </p>
  </div>
</body>
</html>
"""
    return text, body


def send_nominee_invitation(
    nominee_email: str,
    nominee_name: str,
    owner_name: str,
    invite_link: str,
    access_level: str,
    categories: Sequence[str],
    *,
    config: EmailConfig | None = None,
) -> dict[str, Any]:
    cfg = EmailConfig.from_env() if config is None else config
    subject = f"You've been granted access to {owner_name}'s account"

    if not cfg.configured:
        logger.warning(
            "email transport not configured; nominee invitation logged only to=%s subject=%r link=%s",
            nominee_email,
            subject,
            invite_link,
        )
        return {
            "success": True,
            "message": "Email logged to console (development mode)",
            "invite_link": invite_link,
        }

    text, body = _invitation_bodies(
        nominee_name=nominee_name,
        owner_name=owner_name,
        invite_link=invite_link,
        access_level=access_level,
        categories=categories,
    )
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = f"{BRAND_NAME} <{cfg.sender}>"
    message["To"] = nominee_email
    message.set_content(text)
    message.add_alternative(body, subtype="html")

    try:
        if cfg.secure:
            with smtplib.SMTP_SSL(cfg.host, cfg.port, timeout=30) as smtp:
                smtp.login(cfg.user, cfg.password)
                smtp.send_message(message)
        else:
            with smtplib.SMTP(cfg.host, cfg.port, timeout=30) as smtp:
                smtp.starttls()
                smtp.login(cfg.user, cfg.password)
                smtp.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("failed to send invitation email to=%s error=%s", nominee_email, exc)
        raise NotificationError("Failed to send invitation email") from exc

    logger.info("invitation email sent to=%s", nominee_email)
    return {"success": True, "message": "Invitation email sent successfully"}


def normalize_mobile(mobile: str) -> str:
    digits = re.sub(r"\D", "", mobile or "")
    if digits.startswith("91") and len(digits) == 12:
        return digits[2:]
    return digits


def _log_fallback(cfg: SmsConfig, mobile: str, message: str) -> None:
    # message text carries the OTP; production logs only that delivery fell back
    if cfg.log_message_fallback:
        logger.warning("sms fallback to=%s message=%s", mobile, message)
    else:
        logger.warning("sms fallback to=%s message withheld", mobile)


def send_sms(mobile: str, message: str, *, config: SmsConfig | None = None) -> dict[str, Any]:
    """Send an OTP-bearing message through the SMS gateway.

    The gateway only accepts a six digit code, so the first one found in
    ``message`` is what gets delivered. Failures are reported in the result
    and never raised.
    """
    cfg = SmsConfig.from_env() if config is None else config
    if not cfg.configured:
        logger.warning("sms gateway not configured")
        _log_fallback(cfg, mobile, message)
        return {"success": True, "message": "SMS logged (API not configured)"}

    match = re.search(r"\d{6}", message)
    otp = match.group(0) if match else ""
    phone = normalize_mobile(mobile)
    try:
        response = requests.get(
            f"{cfg.api_url}/V1.php",
            params={"API": cfg.api_key, "PHONE": phone, "OTP": otp},
            timeout=cfg.timeout_s,
        )
    except requests.RequestException as exc:
        logger.error("sms delivery failed phone=%s error=%s", phone, type(exc).__name__)
        _log_fallback(cfg, mobile, message)
        return {"success": False, "message": "SMS failed, OTP logged to console", "error": str(exc)}

    if response.status_code != 200:
        logger.error("sms gateway rejected message phone=%s status=%s", phone, response.status_code)
        _log_fallback(cfg, mobile, message)
        return {
            "success": False,
            "message": "SMS failed, OTP logged to console",
            "error": f"gateway status {response.status_code}",
        }

    logger.info("sms sent phone=%s", phone)
    return {"success": True, "message": "SMS sent successfully", "data": response.text}


def send_otp_via_sms(mobile: str, otp: str, *, config: SmsConfig | None = None) -> dict[str, Any]:
    cfg = SmsConfig.from_env() if config is None else config
    message = (
        f"Your {BRAND_NAME} OTP is: {otp}. Valid for {cfg.otp_expiry_minutes} minutes. "
        "Do not share this OTP with anyone."
    )
    return send_sms(mobile, message, config=cfg)
