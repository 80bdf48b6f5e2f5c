from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from records.errors import ApiError, NotificationError
from records.notifications import send_nominee_invitation, send_otp_via_sms
from records.schemas import DOCUMENT_CATEGORIES

logger = logging.getLogger(__name__)

MAX_TOTAL_SHARE = 100.0

_PROFILE_FIELDS: tuple[str, ...] = (
    "full_name",
    "relationship",
    "date_of_birth",
    "aadhaar_number",
    "pan_number",
    "mobile_number",
    "email",
    "address",
    "share_percentage",
    "notes",
)
_REQUIRED_FIELDS = ("full_name", "relationship", "date_of_birth", "share_percentage")
_PRIVATE_FIELDS = ("invite_token", "mobile_otp")


def _parse_ts(raw: Any) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        return None


def _format_share(value: float) -> str:
    return f"{value:g}"


def _access_denied(message: str = "You do not have access to this account") -> ApiError:
    return ApiError(
        code="NOMINEE_ACCESS_DENIED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=403,
    )


@dataclass(frozen=True)
class NomineeAccess:
    """Grant held by a linked nominee over the owner's documents."""

    nominee_id: str
    owner_id: str
    access_level: str
    categories: tuple[str, ...]

    @property
    def can_download(self) -> bool:
        return self.access_level in {"download", "full"}

    def check_category(self, category: str) -> None:
        if category not in self.categories:
            raise ApiError(
                code="NOMINEE_CATEGORY_FORBIDDEN",
                message="You do not have permission to access this document category",
                error_class="security_sensitive",
                retryable=False,
                http_status=403,
            )


class StoreNomineesMixin:
    @staticmethod
    def _public_nominee(nominee: dict[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in nominee.items() if key not in _PRIVATE_FIELDS}

    def _require_nominee(self, *, user_id: str, nominee_id: str) -> dict[str, Any]:
        nominee = self.nominees_repository.get(user_id=user_id, nominee_id=nominee_id)
        if nominee is None:
            raise ApiError(
                code="NOMINEE_NOT_FOUND",
                message="Nominee not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return nominee

    def _active_share_total(self, *, user_id: str, exclude_id: str | None = None) -> float:
        return sum(
            float(item.get("share_percentage") or 0)
            for item in self.nominees_repository.list(user_id=user_id, is_active=True)
            if item["nominee_id"] != exclude_id
        )

    def _check_share_allocation(self, *, user_id: str, share: float, exclude_id: str | None = None) -> None:
        total = self._active_share_total(user_id=user_id, exclude_id=exclude_id)
        if total + share > MAX_TOTAL_SHARE:
            scope = "Current total (excluding this nominee)" if exclude_id else "Current total"
            raise ApiError(
                code="NOMINEE_SHARE_EXCEEDED",
                message=f"Total share percentage cannot exceed 100%. {scope}: {_format_share(total)}%",
                error_class="business_rule",
                retryable=False,
                http_status=400,
            )

    def create_nominee(self, *, user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        share = float(payload.get("share_percentage") or 0)
        self._check_share_allocation(user_id=user_id, share=share)
        now = self._utcnow_iso()
        nominee: dict[str, Any] = {field: payload.get(field) for field in _PROFILE_FIELDS}
        nominee.update(
            {
                "nominee_id": self._new_id("nom"),
                "user_id": user_id,
                "share_percentage": share,
                "mobile_verified": False,
                "mobile_otp": None,
                "is_active": True,
                "documents": [],
                "has_access": False,
                "access_level": "none",
                "invite_status": "not_invited",
                "invite_token": None,
                "invite_sent_at": None,
                "linked_user": None,
                "linked_at": None,
                "last_accessed_at": None,
                "access_expires_at": None,
                "can_view_categories": [],
                "owner_name": None,
                "owner_email": None,
                "created_at": now,
                "updated_at": now,
            }
        )
        saved = self._persist_nominee(nominee=nominee)
        return self._public_nominee(saved)

    def list_nominees(self, *, user_id: str, is_active: bool | None = None) -> list[dict[str, Any]]:
        return [self._public_nominee(x) for x in self.nominees_repository.list(user_id=user_id, is_active=is_active)]

    def get_nominee(self, *, user_id: str, nominee_id: str) -> dict[str, Any]:
        return self._public_nominee(self._require_nominee(user_id=user_id, nominee_id=nominee_id))

    def update_nominee(self, *, user_id: str, nominee_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        nominee = self._require_nominee(user_id=user_id, nominee_id=nominee_id)
        will_be_active = bool(payload["is_active"]) if payload.get("is_active") is not None else nominee["is_active"]
        share_changed = payload.get("share_percentage") is not None
        if will_be_active and (share_changed or not nominee["is_active"]):
            share = float(payload["share_percentage"]) if share_changed else float(nominee["share_percentage"] or 0)
            self._check_share_allocation(user_id=user_id, share=share, exclude_id=nominee_id)

        mobile_changed = "mobile_number" in payload and payload["mobile_number"] != nominee.get("mobile_number")
        for field in _PROFILE_FIELDS:
            if field in payload:
                nominee[field] = payload[field]
        if any(nominee.get(field) is None for field in _REQUIRED_FIELDS):
            raise ApiError(
                code="REQ_VALIDATION_FAILED",
                message="full_name, relationship, date_of_birth and share_percentage cannot be cleared",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        if share_changed:
            nominee["share_percentage"] = float(payload["share_percentage"])
        if payload.get("is_active") is not None:
            nominee["is_active"] = bool(payload["is_active"])
        if mobile_changed:
            nominee["mobile_verified"] = False
            nominee["mobile_otp"] = None
        nominee["updated_at"] = self._utcnow_iso()
        return self._public_nominee(self._persist_nominee(nominee=nominee))

    def delete_nominee(self, *, user_id: str, nominee_id: str) -> dict[str, Any]:
        nominee = self._require_nominee(user_id=user_id, nominee_id=nominee_id)
        nominee["is_active"] = False
        nominee["updated_at"] = self._utcnow_iso()
        self._persist_nominee(nominee=nominee)
        return {"nominee_id": nominee_id, "deleted": True}

    def nominee_stats(self, *, user_id: str) -> dict[str, Any]:
        nominees = self.nominees_repository.list(user_id=user_id, is_active=True)
        allocated = sum(float(x.get("share_percentage") or 0) for x in nominees)
        by_relationship: dict[str, dict[str, Any]] = {}
        for nominee in nominees:
            bucket = by_relationship.setdefault(nominee["relationship"], {"count": 0, "total_share": 0.0})
            bucket["count"] += 1
            bucket["total_share"] += float(nominee.get("share_percentage") or 0)
        return {
            "total_nominees": len(nominees),
            "total_share_allocated": allocated,
            "share_remaining": MAX_TOTAL_SHARE - allocated,
            "by_relationship": by_relationship,
        }

    def invite_nominee(
        self,
        *,
        user_id: str,
        nominee_id: str,
        payload: dict[str, Any],
        owner_name: str,
        owner_email: str = "",
    ) -> dict[str, Any]:
        """Issue an invitation token and email the acceptance link.

        A failed email does not undo the invitation: the response reports
        ``email_sent=False`` and carries the link so the owner can pass it on.
        """
        nominee = self._require_nominee(user_id=user_id, nominee_id=nominee_id)
        if not nominee.get("email"):
            raise ApiError(
                code="NOMINEE_EMAIL_REQUIRED",
                message="Nominee must have an email address to receive invitation",
                error_class="validation",
                retryable=False,
                http_status=400,
            )

        now = self._utcnow()
        invite_token = secrets.token_hex(32)
        nominee["has_access"] = True
        nominee["access_level"] = payload.get("access_level") or "view"
        nominee["invite_status"] = "pending"
        nominee["invite_token"] = invite_token
        nominee["invite_sent_at"] = now.isoformat()
        nominee["can_view_categories"] = list(payload.get("can_view_categories") or DOCUMENT_CATEGORIES)
        expires_in_days = payload.get("expires_in_days")
        if expires_in_days:
            nominee["access_expires_at"] = (now + timedelta(days=int(expires_in_days))).isoformat()
        nominee["owner_name"] = owner_name
        nominee["owner_email"] = owner_email or None
        nominee["updated_at"] = now.isoformat()
        saved = self._persist_nominee(nominee=nominee)

        invite_link = f"{self.settings.frontend_url}/nominee-invite/{invite_token}"
        try:
            result = send_nominee_invitation(
                saved["email"],
                saved["full_name"],
                owner_name,
                invite_link,
                saved["access_level"],
                saved["can_view_categories"],
            )
            email_sent = bool(result.get("success"))
        except NotificationError as exc:
            logger.error("nominee invitation email failed nominee_id=%s error=%s", nominee_id, exc)
            email_sent = False

        data: dict[str, Any] = {"nominee": self._public_nominee(saved), "email_sent": email_sent}
        if not email_sent or not self.settings.is_production:
            data["invite_link"] = invite_link
        return data

    def accept_nominee_invite(self, *, user_id: str, invite_token: str) -> dict[str, Any]:
        nominee = self.nominees_repository.get_pending_by_invite_token(invite_token=invite_token)
        if nominee is None:
            raise ApiError(
                code="INVITE_INVALID",
                message="Invalid or expired invitation",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        if nominee["user_id"] == user_id:
            raise ApiError(
                code="INVITE_SELF_ACCEPT",
                message="You cannot accept an invitation to your own account",
                error_class="business_rule",
                retryable=False,
                http_status=400,
            )
        expires_at = _parse_ts(nominee.get("access_expires_at"))
        now = self._utcnow()
        if expires_at is not None and expires_at < now:
            raise ApiError(
                code="INVITE_EXPIRED",
                message="This invitation has expired",
                error_class="business_rule",
                retryable=False,
                http_status=400,
            )

        nominee["invite_status"] = "accepted"
        nominee["linked_user"] = user_id
        nominee["linked_at"] = now.isoformat()
        nominee["invite_token"] = None
        nominee["updated_at"] = now.isoformat()
        saved = self._persist_nominee(nominee=nominee)
        logger.info("nominee invitation accepted nominee_id=%s", saved["nominee_id"])
        return {
            "nominee": self._public_nominee(saved),
            "account_owner": {
                "user_id": saved["user_id"],
                "full_name": saved.get("owner_name"),
                "email": saved.get("owner_email"),
            },
        }

    def revoke_nominee_access(self, *, user_id: str, nominee_id: str) -> dict[str, Any]:
        nominee = self._require_nominee(user_id=user_id, nominee_id=nominee_id)
        nominee["has_access"] = False
        nominee["invite_status"] = "revoked"
        nominee["access_level"] = "none"
        nominee["invite_token"] = None
        nominee["updated_at"] = self._utcnow_iso()
        return self._public_nominee(self._persist_nominee(nominee=nominee))

    def my_nominee_access(self, *, user_id: str) -> list[dict[str, Any]]:
        now = self._utcnow()
        accounts = []
        for nominee in self.nominees_repository.list_linked(linked_user=user_id):
            expires_at = _parse_ts(nominee.get("access_expires_at"))
            if expires_at is not None and expires_at <= now:
                continue
            item = self._public_nominee(nominee)
            item["account_owner"] = {
                "user_id": nominee["user_id"],
                "full_name": nominee.get("owner_name"),
                "email": nominee.get("owner_email"),
            }
            accounts.append(item)
        return accounts

    def log_nominee_access(self, *, user_id: str, nominee_id: str) -> dict[str, Any]:
        nominee = self.nominees_repository.get_linked(nominee_id=nominee_id, linked_user=user_id)
        if nominee is None or not nominee.get("has_access") or nominee.get("invite_status") != "accepted":
            raise _access_denied("Access denied")
        nominee["last_accessed_at"] = self._utcnow_iso()
        saved = self._persist_nominee(nominee=nominee)
        return {"nominee_id": nominee_id, "last_accessed_at": saved["last_accessed_at"]}

    def resolve_nominee_access(self, *, user_id: str, nominee_id: str) -> NomineeAccess:
        nominee = self.nominees_repository.get_linked(nominee_id=nominee_id, linked_user=user_id)
        if (
            nominee is None
            or not nominee.get("has_access")
            or nominee.get("invite_status") != "accepted"
            or not nominee.get("is_active")
        ):
            logger.warning("nominee access denied nominee_id=%s user_id=%s", nominee_id, user_id)
            raise _access_denied()
        expires_at = _parse_ts(nominee.get("access_expires_at"))
        if expires_at is not None and expires_at < self._utcnow():
            raise ApiError(
                code="NOMINEE_ACCESS_EXPIRED",
                message="Your access to this account has expired",
                error_class="security_sensitive",
                retryable=False,
                http_status=403,
            )
        return NomineeAccess(
            nominee_id=nominee["nominee_id"],
            owner_id=nominee["user_id"],
            access_level=str(nominee.get("access_level") or "none"),
            categories=tuple(nominee.get("can_view_categories") or ()),
        )

    @staticmethod
    def _otp_digest(nominee_id: str, otp: str) -> str:
        return hashlib.sha256(f"{nominee_id}:{otp}".encode("utf-8")).hexdigest()

    def send_nominee_mobile_otp(self, *, user_id: str, nominee_id: str) -> dict[str, Any]:
        nominee = self._require_nominee(user_id=user_id, nominee_id=nominee_id)
        if not nominee.get("mobile_number"):
            raise ApiError(
                code="NOMINEE_MOBILE_REQUIRED",
                message="Nominee must have a mobile number to verify",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        otp = f"{secrets.randbelow(1_000_000):06d}"
        expires_at = self._utcnow() + timedelta(minutes=self.settings.otp_expiry_minutes)
        nominee["mobile_otp"] = {
            "digest": self._otp_digest(nominee_id, otp),
            "expires_at": expires_at.isoformat(),
        }
        nominee["mobile_verified"] = False
        nominee["updated_at"] = self._utcnow_iso()
        self._persist_nominee(nominee=nominee)

        result = send_otp_via_sms(nominee["mobile_number"], otp)
        return {
            "nominee_id": nominee_id,
            "sms_sent": bool(result.get("success")),
            "expires_at": expires_at.isoformat(),
        }

    def confirm_nominee_mobile_otp(self, *, user_id: str, nominee_id: str, otp: str) -> dict[str, Any]:
        nominee = self._require_nominee(user_id=user_id, nominee_id=nominee_id)
        pending = nominee.get("mobile_otp") or {}
        if not pending.get("digest"):
            raise ApiError(
                code="OTP_INVALID",
                message="Invalid OTP",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        expires_at = _parse_ts(pending.get("expires_at"))
        if expires_at is None or expires_at < self._utcnow():
            nominee["mobile_otp"] = None
            self._persist_nominee(nominee=nominee)
            raise ApiError(
                code="OTP_EXPIRED",
                message="OTP has expired",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        if not hmac.compare_digest(pending["digest"], self._otp_digest(nominee_id, otp)):
            raise ApiError(
                code="OTP_INVALID",
                message="Invalid OTP",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        nominee["mobile_otp"] = None
        nominee["mobile_verified"] = True
        nominee["updated_at"] = self._utcnow_iso()
        return self._public_nominee(self._persist_nominee(nominee=nominee))
