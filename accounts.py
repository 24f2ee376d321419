"""
User accounts: registration, login, profile, admin management and the
password-reset OTP flow.

Only one admin may exist. The check is a scan, backed by the unique
partial index on ``role == "admin"`` created at startup.
"""
from datetime import timedelta
import logging
import secrets
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from auth import create_access_token, hash_password, verify_password
from errors import InvalidState, NotFound, StorefrontError, TooManyAttempts, Unauthorized, ValidationFailed
from notifications import Notifier
from repositories import Store, as_utc, utcnow
from schemas import ResetChallenge
import settings

logger = logging.getLogger(__name__)

ADMIN_SLOT_TAKEN = "Admin slot is already taken. Only one admin is allowed."
HIDDEN_FIELDS = ("password_hash", "reset_otp")


def public_user(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not user:
        return user
    return {k: v for k, v in user.items() if k not in HIDDEN_FIELDS}


def generate_otp() -> str:
    low = 10 ** (settings.OTP_LENGTH - 1)
    return str(low + secrets.randbelow(9 * low))


class AccountService:
    def __init__(self, store: Store, notifier: Notifier):
        self.store = store
        self.notifier = notifier

    def _issue(self, user: Dict[str, Any]) -> Dict[str, Any]:
        return {"token": create_access_token(user["id"], user.get("role", "customer")), "user": public_user(user)}

    # ------------------------------------------------------------------
    # Sign up / sign in
    # ------------------------------------------------------------------

    def register(self, name: str, email: str, password: str, phone: Optional[str] = None, role: str = "customer"):
        if role == "user":
            role = "customer"
        if role not in ("customer", "admin"):
            raise ValidationFailed("Invalid role")
        email = email.strip().lower()
        if self.store.users.find_by_email(email):
            raise InvalidState("User already exists")
        if role == "admin" and self.store.users.admins():
            raise InvalidState(ADMIN_SLOT_TAKEN)
        try:
            user = self.store.users.create(
                {"name": name.strip(), "email": email, "phone": phone, "password_hash": hash_password(password), "role": role}
            )
        except DuplicateKeyError:
            raise InvalidState(ADMIN_SLOT_TAKEN if role == "admin" else "User already exists")
        logger.info("Registered %s %s", role, user["id"])
        return self._issue(user)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        user = self.store.users.find_by_email(email.strip().lower())
        if not user or not verify_password(password, user["password_hash"]):
            raise Unauthorized("Invalid credentials")
        return self._issue(user)

    def phone_login(self, phone: str, name: Optional[str] = None, email: Optional[str] = None) -> Dict[str, Any]:
        phone = (phone or "").strip()
        if not phone:
            raise ValidationFailed("Phone number is required")
        user = self.store.users.find_by_phone(phone)
        if not user:
            user = self.store.users.create(
                {
                    "name": name or "User",
                    "email": email.strip().lower() if email else None,
                    "phone": phone,
                    # never used: phone accounts sign in without a password
                    "password_hash": hash_password(secrets.token_urlsafe(16)),
                    "role": "customer",
                }
            )
            logger.info("Created phone account %s", user["id"])
        return self._issue(user)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def profile(self, user_id: str) -> Dict[str, Any]:
        user = self.store.users.find_by_id(user_id)
        if not user:
            raise NotFound("User not found")
        return public_user(user)

    def update_profile(self, user_id: str, name: Optional[str] = None, phone: Optional[str] = None, address=None):
        changes = {k: v for k, v in {"name": name, "phone": phone, "address": address}.items() if v is not None}
        user = self.store.users.update(user_id, changes) if changes else self.store.users.find_by_id(user_id)
        if not user:
            raise NotFound("User not found")
        return public_user(user)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def list_users(self) -> List[Dict[str, Any]]:
        return [public_user(u) for u in self.store.users.find({}, sort=[("created_at", -1)])]

    def admin_exists(self) -> bool:
        return self.store.users.count({"role": "admin"}) > 0

    def delete_user(self, user_id: str) -> None:
        user = self.store.users.find_by_id(user_id)
        if not user:
            raise NotFound("User not found")
        if user.get("role") == "admin" and len(self.store.users.admins()) <= 1:
            raise InvalidState("Cannot delete the only admin.")

        order_ids = [o["id"] for o in self.store.orders.find({"user_id": user["id"]})]
        if order_ids:
            self.store.order_lines.delete_for_orders(order_ids)
            self.store.orders.delete_many({"user_id": user["id"]})
        self.store.cart.clear(user["id"])
        self.store.users.delete(user["id"])
        logger.info("Deleted user %s with %s orders", user["id"], len(order_ids))

    def make_admin(self, email: str) -> Dict[str, Any]:
        if not email:
            raise ValidationFailed("Email is required")
        user = self.store.users.find_by_email(email.strip().lower())
        if not user:
            raise NotFound("User not found")
        if user.get("role") == "admin":
            raise InvalidState("User is already an admin")
        if self.store.users.admins():
            raise InvalidState(ADMIN_SLOT_TAKEN)
        try:
            promoted = self.store.users.promote(user["id"])
        except DuplicateKeyError:
            raise InvalidState(ADMIN_SLOT_TAKEN)
        if promoted is None:
            raise InvalidState(ADMIN_SLOT_TAKEN)
        logger.info("Promoted %s to admin", user["id"])
        return public_user(promoted)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def send_reset_otp(self, email: str) -> Dict[str, Any]:
        user = self.store.users.find_by_email((email or "").strip().lower())
        if not user:
            raise NotFound("User not found with this email")

        otp = generate_otp()
        challenge = ResetChallenge(
            code=otp, expires_at=utcnow() + timedelta(minutes=settings.OTP_TTL_MINUTES), attempts=0
        )
        self.store.users.update(user["id"], {"reset_otp": challenge})

        sent = self.notifier.reset_otp(user["email"], otp)
        if not sent and settings.IS_PRODUCTION:
            raise StorefrontError("OTP generated but failed to send email. Please try again.")
        result: Dict[str, Any] = {
            "message": "OTP sent to your email. Check your inbox."
            if sent
            else "OTP generated. Check the server log (email service not configured)."
        }
        if settings.APP_ENV == "development":
            result["test_otp"] = otp
        if not sent:
            logger.info("Password reset OTP for %s: %s", user["email"], otp)
        return result

    def verify_reset_otp(self, email: str, otp: str) -> Dict[str, Any]:
        if not email or not otp:
            raise ValidationFailed("Email and OTP are required")
        self._check_otp(email, otp)
        return {"message": "OTP verified successfully"}

    def reset_password(self, email: str, otp: str, new_password: str) -> Dict[str, Any]:
        if not email or not otp or not new_password:
            raise ValidationFailed("All fields are required")
        if len(new_password) < 6:
            raise ValidationFailed("Password must be at least 6 characters")
        user = self._check_otp(email, otp)
        self.store.users.update(user["id"], {"password_hash": hash_password(new_password), "reset_otp": None})
        self.notifier.password_reset(user["email"])
        logger.info("Password reset for %s", user["id"])
        return {"message": "Password reset successfully"}

    def _check_otp(self, email: str, otp: str) -> Dict[str, Any]:
        user = self.store.users.find_by_email(email.strip().lower())
        if not user:
            raise NotFound("User not found")
        challenge = user.get("reset_otp")
        if not challenge or not challenge.get("code"):
            raise InvalidState("No OTP request found. Please request a new OTP.")
        if utcnow() > as_utc(challenge["expires_at"]):
            self.store.users.update(user["id"], {"reset_otp": None})
            raise InvalidState("OTP has expired. Please request a new one.")
        if challenge.get("attempts", 0) >= settings.OTP_MAX_ATTEMPTS:
            self.store.users.update(user["id"], {"reset_otp": None})
            raise TooManyAttempts("Too many failed attempts. Please request a new OTP.")
        if challenge["code"] != otp.strip():
            attempts = challenge.get("attempts", 0) + 1
            self.store.users.update(user["id"], {"reset_otp": {**challenge, "attempts": attempts}})
            raise InvalidState(f"Invalid OTP. {settings.OTP_MAX_ATTEMPTS - attempts} attempts remaining.")
        return user
