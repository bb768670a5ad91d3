import logging
import sqlite3
from typing import Any, Dict, List, Optional, Union

from libraryhub.config import Settings, settings
from libraryhub.database import get_db_connection, transaction
from libraryhub.errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from libraryhub.models import Role, User
from libraryhub.policy import Action, is_allowed
from libraryhub.security import hash_password, verify_password
from libraryhub.utils import Clock, clamp_page, generate_membership_id, like_pattern, new_id, paginate, to_iso, utcnow

logger = logging.getLogger(__name__)

MEMBERSHIP_ID_ATTEMPTS = 5


def _coerce_role(value: Union[str, Role, None]) -> Role:
    if value is None:
        return Role.USER
    try:
        return Role(value)
    except ValueError as e:
        raise ValidationError(f"Invalid role: {value}") from e


class UserService:
    """Accounts: registration, login, profiles and administration."""

    def __init__(self, clock: Clock = utcnow, config: Settings = settings) -> None:
        self.clock = clock
        self.config = config

    # ------------------------- Lookups ------------------------- #
    def get_user(self, user_id: str) -> User:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError("User not found")
        return User.from_row(row)

    def get_active_user(self, user_id: str) -> User:
        """Resolve the user behind a token; unknown or inactive users are rejected."""
        try:
            user = self.get_user(user_id)
        except NotFoundError as e:
            raise UnauthorizedError("User not found or inactive") from e
        if not user.is_active:
            raise UnauthorizedError("User not found or inactive")
        return user

    def find_by_email(self, email: str) -> Optional[User]:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email.strip().lower(),)).fetchone()
        finally:
            conn.close()
        return User.from_row(row) if row else None

    # ------------------------- Creation ------------------------- #
    def _insert(self, name: str, email: str, password: str, role: Role, borrowing_limit: Optional[int],
                duplicate_message: str) -> User:
        now = self.clock()
        email = email.strip().lower()
        with transaction() as conn:
            if conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone():
                raise ConflictError(duplicate_message)

            for _ in range(MEMBERSHIP_ID_ATTEMPTS):
                membership_id = generate_membership_id(now)
                taken = conn.execute("SELECT 1 FROM users WHERE membership_id = ?", (membership_id,)).fetchone()
                if taken is None:
                    break
            else:
                raise ConflictError("Could not allocate a membership id, please retry")

            user = User(
                id=new_id(),
                name=name.strip(),
                email=email,
                password_hash=hash_password(password),
                membership_id=membership_id,
                role=role,
                profile_picture=self.config.default_avatar,
                borrowing_limit=borrowing_limit if borrowing_limit is not None else self.config.default_borrowing_limit,
                borrowed_books=0,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            try:
                conn.execute(
                    """
                    INSERT INTO users (
                        id, name, email, password_hash, role, profile_picture, membership_id,
                        borrowing_limit, borrowed_books, is_active, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 1, ?, ?)
                    """,
                    (
                        user.id, user.name, user.email, user.password_hash, user.role.value,
                        user.profile_picture, user.membership_id, user.borrowing_limit,
                        to_iso(now), to_iso(now),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(duplicate_message) from e
        logger.info(f"Created {user.role.value} account {user.id} ({user.membership_id})")
        return user

    def register(self, name: str, email: str, password: str, role: Union[str, Role, None] = None,
                 creator: Optional[User] = None) -> User:
        """Self-service sign-up. Staff accounts may only be created by an admin."""
        role = _coerce_role(role)
        if role != Role.USER and not is_allowed(creator, Action.CREATE_STAFF):
            raise ForbiddenError("Unauthorized to create this user type")
        return self._insert(name, email, password, role, None, "User already exists")

    def create_user(self, name: str, email: str, password: str, role: Union[str, Role, None] = None,
                    borrowing_limit: Optional[int] = None) -> User:
        """Admin account creation."""
        return self._insert(name, email, password, _coerce_role(role), borrowing_limit,
                            "User with this email already exists")

    # ------------------------- Authentication ------------------------- #
    def authenticate(self, email: str, password: str) -> User:
        user = self.find_by_email(email)
        if user is None:
            raise UnauthorizedError("Invalid email or password")
        if not user.is_active:
            raise UnauthorizedError("Account is inactive")
        if not verify_password(user.password_hash, password):
            raise UnauthorizedError("Invalid email or password")
        logger.info(f"User {user.id} logged in")
        return user

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self.get_user(user_id)
        if not verify_password(user.password_hash, current_password):
            raise ConflictError("Current password is incorrect")
        conn = get_db_connection()
        try:
            conn.execute(
                "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
                (hash_password(new_password), to_iso(self.clock()), user_id),
            )
        finally:
            conn.close()
        logger.info(f"Password changed for user {user_id}")

    # ------------------------- Updates ------------------------- #
    def _save(self, user: User) -> User:
        user.updated_at = self.clock()
        conn = get_db_connection()
        try:
            conn.execute(
                """
                UPDATE users SET
                    name = ?, email = ?, role = ?, profile_picture = ?, borrowing_limit = ?,
                    is_active = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    user.name, user.email, user.role.value, user.profile_picture, user.borrowing_limit,
                    int(user.is_active), to_iso(user.updated_at), user.id,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError("User with this email already exists") from e
        finally:
            conn.close()
        return user

    def update_profile(self, user_id: str, name: Optional[str] = None, email: Optional[str] = None,
                       profile_picture: Optional[str] = None) -> User:
        user = self.get_user(user_id)
        if name:
            user.name = name.strip()
        if email:
            user.email = email.strip().lower()
        if profile_picture:
            user.profile_picture = profile_picture
        return self._save(user)

    def update_user(self, user_id: str, changes: Dict[str, Any]) -> User:
        user = self.get_user(user_id)
        if changes.get("name"):
            user.name = changes["name"].strip()
        if changes.get("email"):
            user.email = changes["email"].strip().lower()
        if changes.get("role"):
            user.role = _coerce_role(changes["role"])
        if changes.get("borrowing_limit") is not None:
            if changes["borrowing_limit"] < 0:
                raise ValidationError("Borrowing limit cannot be negative")
            user.borrowing_limit = changes["borrowing_limit"]
        if changes.get("is_active") is not None:
            user.is_active = bool(changes["is_active"])
        saved = self._save(user)
        logger.info(f"Updated user {user_id}")
        return saved

    def delete_user(self, user_id: str, actor: Optional[User] = None) -> None:
        if actor is not None and actor.id == user_id:
            raise ConflictError("Cannot delete your own account")
        with transaction() as conn:
            row = conn.execute("SELECT borrowed_books FROM users WHERE id = ?", (user_id,)).fetchone()
            if row is None:
                raise NotFoundError("User not found")
            if row["borrowed_books"] > 0:
                raise ConflictError("Cannot delete user with borrowed books")
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        logger.info(f"Removed user {user_id}")

    # ------------------------- Listing ------------------------- #
    def list_users(
        self,
        name: Optional[str] = None,
        email: Optional[str] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        page, limit = clamp_page(page, limit, self.config.default_page_size, self.config.max_page_size)
        where: List[str] = []
        params: List[Any] = []
        if name:
            where.append("name LIKE ? ESCAPE '\\'")
            params.append(like_pattern(name))
        if email:
            where.append("email LIKE ? ESCAPE '\\'")
            params.append(like_pattern(email))
        if role:
            where.append("role = ?")
            params.append(_coerce_role(role).value)
        if is_active is not None:
            where.append("is_active = ?")
            params.append(int(is_active))

        conn = get_db_connection()
        try:
            return paginate(conn, "users", where, params, "created_at DESC, id DESC", page, limit, User.from_row)
        finally:
            conn.close()
