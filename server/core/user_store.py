"""
In-memory user accounts for the Cap Gold auth server.

Passwords are stored as salted PBKDF2-SHA256 hashes. Users can sign in with
their email address or phone number.
"""

import hmac
import logging
import secrets
import threading
import uuid
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from shared.exceptions import (
    AuthenticationError, ErrorCode, InvalidCredentialsError, ValidationError
)
from shared.models import User, UserRole, utc_now

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100000
DEFAULT_USER_PAGE_SIZE = 100


def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    """Return ``salt$hash`` in hex."""
    salt = salt or secrets.token_bytes(16)
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    digest = kdf.derive(password.encode('utf-8'))
    return f"{salt.hex()}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        salt_hex, digest_hex = stored.split('$', 1)
        salt = bytes.fromhex(salt_hex)
    except ValueError:
        return False
    candidate = hash_password(password, salt).split('$', 1)[1]
    return hmac.compare_digest(candidate, digest_hex)


@dataclass
class UserRecord:
    user: User
    password_hash: str


class UserStore:
    """Thread-safe in-memory user repository."""

    def __init__(self, min_password_length: int = 6):
        self.min_password_length = min_password_length
        self._lock = threading.Lock()
        self._users: Dict[str, UserRecord] = {}

    def _check_password(self, password: str, field_name: str = "password") -> None:
        if not password or len(password) < self.min_password_length:
            raise ValidationError(
                f"Password must be at least {self.min_password_length} characters",
                field_name=field_name
            )

    def _find_locked(self, identifier: str) -> Optional[UserRecord]:
        key = identifier.strip().lower()
        for record in self._users.values():
            if (record.user.email or '').lower() == key or record.user.phone_number == identifier.strip():
                return record
        return None

    def create_user(
        self,
        email: str,
        password: str,
        phone_number: str,
        display_name: Optional[str] = None,
        role: int = UserRole.CUSTOMER.value
    ) -> User:
        """
        Register a new account.

        Raises:
            ValidationError: Missing email, short password or phone number
            AuthenticationError: Email or phone number already registered (409)
        """
        if not email or '@' not in email:
            raise ValidationError("A valid email address is required", field_name="email")
        self._check_password(password)
        if not phone_number or len(phone_number) < 10:
            raise ValidationError("Phone number must be at least 10 digits", field_name="phoneNumber")

        now_ms = int(utc_now().timestamp() * 1000)
        user = User(
            id=uuid.uuid4().hex,
            email=email.strip(),
            phone_number=phone_number,
            display_name=display_name,
            name=display_name,
            role=role,
            created_at=now_ms,
            last_login=now_ms,
        )

        with self._lock:
            if self._find_locked(email) or self._find_locked(phone_number):
                raise AuthenticationError(
                    "An account with this email or phone number already exists",
                    error_code=ErrorCode.AUTH_USER_EXISTS
                )
            self._users[user.id] = UserRecord(user, hash_password(password))

        logger.info(f"Registered user {user.id}")
        return user

    def authenticate(self, identifier: str, password: str) -> User:
        """
        Check credentials given an email address or phone number.

        Raises:
            InvalidCredentialsError: Unknown user or wrong password
        """
        with self._lock:
            record = self._find_locked(identifier or '')
            if record is None or not verify_password(password or '', record.password_hash):
                raise InvalidCredentialsError()
            record.user = replace(record.user, last_login=int(utc_now().timestamp() * 1000))
            return record.user

    def get_user(self, user_id: str) -> User:
        with self._lock:
            record = self._users.get(user_id)
        if record is None:
            raise AuthenticationError("User not found", error_code=ErrorCode.AUTH_USER_NOT_FOUND)
        return record.user

    def update_profile(
        self,
        user_id: str,
        current_password: str,
        display_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        shop_name: Optional[str] = None,
        email: Optional[str] = None
    ) -> User:
        """
        Update profile fields after re-checking the current password.

        Raises:
            ValidationError: Wrong current password
            AuthenticationError: The new email or phone number belongs to someone else
        """
        with self._lock:
            record = self._users.get(user_id)
            if record is None:
                raise AuthenticationError("User not found", error_code=ErrorCode.AUTH_USER_NOT_FOUND)
            if not verify_password(current_password or '', record.password_hash):
                raise ValidationError("Current password is incorrect", field_name="currentPassword")

            for value in (email, phone_number):
                if value:
                    other = self._find_locked(value)
                    if other is not None and other.user.id != user_id:
                        raise AuthenticationError(
                            "An account with this email or phone number already exists",
                            error_code=ErrorCode.AUTH_USER_EXISTS
                        )

            changes = {}
            if display_name is not None:
                changes['display_name'] = display_name
                changes['name'] = display_name
            if phone_number is not None:
                changes['phone_number'] = phone_number
            if shop_name is not None:
                changes['shop_name'] = shop_name
            if email is not None:
                changes['email'] = email
            record.user = replace(record.user, **changes)
            return record.user

    def change_password(self, user_id: str, current_password: str, new_password: str) -> User:
        self._check_password(new_password, field_name="newPassword")
        with self._lock:
            record = self._users.get(user_id)
            if record is None:
                raise AuthenticationError("User not found", error_code=ErrorCode.AUTH_USER_NOT_FOUND)
            if not verify_password(current_password or '', record.password_hash):
                raise ValidationError("Current password is incorrect", field_name="currentPassword")
            record.password_hash = hash_password(new_password)
            logger.info(f"Password changed for user {user_id}")
            return record.user

    def list_users(
        self,
        search: Optional[str] = None,
        page_token: Optional[str] = None,
        page_size: int = DEFAULT_USER_PAGE_SIZE
    ) -> Tuple[List[User], Optional[str]]:
        """
        Page through accounts in registration order.

        Args:
            search: Case-insensitive match on email, phone number or name
            page_token: Token from the previous page, None for the first page
            page_size: Accounts per page

        Returns:
            (users on the page, token for the next page or None on the last)

        Raises:
            ValidationError: Malformed page token
        """
        try:
            start = int(page_token) if page_token else 0
        except ValueError:
            start = -1
        if start < 0:
            raise ValidationError("Invalid page token", field_name="pageToken")
        page_size = max(1, page_size)
        needle = (search or '').strip().lower()

        with self._lock:
            users = [record.user for record in self._users.values()]

        if needle:
            users = [
                user for user in users
                if any(needle in (value or '').lower()
                       for value in (user.email, user.phone_number, user.display_name))
            ]
        page = users[start:start + page_size]
        next_start = start + page_size
        return page, (str(next_start) if next_start < len(users) else None)

    def set_role(self, user_id: str, role: int) -> User:
        """
        Raises:
            ValidationError: Not a known role
            AuthenticationError: Unknown user (404)
        """
        if role not in {r.value for r in UserRole}:
            raise ValidationError(f"Unknown role: {role}", field_name="role")
        with self._lock:
            record = self._users.get(user_id)
            if record is None:
                raise AuthenticationError("User not found", error_code=ErrorCode.AUTH_USER_NOT_FOUND)
            record.user = replace(record.user, role=role)
        logger.info(f"Role of user {user_id} set to {UserRole(role).name}")
        return record.user

    def count(self) -> int:
        with self._lock:
            return len(self._users)
