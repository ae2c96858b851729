"""
Operator Authentication Service for Atelier.

Provides bcrypt password hashing and JWT session tokens for operator and
admin access (REST bearer auth and the WebSocket ``authenticate-admin`` frame).

Features:
- Accounts stored in the PostgreSQL `users` table
- In-memory fallback when PostgreSQL is unavailable (lost on restart)
- Bcrypt-hashed passwords, JWT HS256 tokens with 8h expiry
- First registered account is always admin, later ones are 'operator'
- JWT secret from JWT_SECRET, otherwise generated once and persisted to disk
- ADMIN_RESET env var for recovery (deletes all users, forces re-setup)
"""

import json
import logging
import os
import re
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from errors import AuthError, ErrorCode, ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)

# JWT config
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 8
BCRYPT_ROUNDS = 12

ROLE_ADMIN = "admin"
ROLE_OPERATOR = "operator"

USERNAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")

# JWT secret persistence when JWT_SECRET is not set
AUTH_DIR = Path(__file__).parent.parent / "data" / "auth"
AUTH_FILE = AUTH_DIR / "operator_auth.json"

# Optional Bearer token extractor (doesn't auto-raise on missing)
_bearer_scheme = HTTPBearer(auto_error=False)


def _hash_password(password: str) -> str:
    return bcrypt.hashpw(
        password.encode("utf-8"),
        bcrypt.gensalt(rounds=BCRYPT_ROUNDS),
    ).decode("utf-8")


def _check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


class AdminAuthManager:
    """
    Operator account and token manager.

    Primary storage: PostgreSQL `users` table.
    Fallback: process memory, so a dev instance without Postgres still works.
    """

    _instance: Optional["AdminAuthManager"] = None

    def __init__(self, auth_file: Optional[Path] = None):
        self._auth_file = auth_file or AUTH_FILE
        self._jwt_secret: Optional[str] = None
        self._setup_required: bool = True
        self._db_available: bool = False
        # Fallback accounts keyed by username
        self._memory_users: Dict[str, Dict[str, Any]] = {}

    @classmethod
    def get_instance(cls) -> "AdminAuthManager":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def initialize(self) -> None:
        """
        Called during app lifespan startup (synchronous).

        Loads the JWT secret from JWT_SECRET or the auth file, creating and
        persisting one on first boot.
        """
        env_secret = os.environ.get("JWT_SECRET", "").strip()
        if env_secret:
            self._jwt_secret = env_secret
        else:
            if self._auth_file.exists():
                try:
                    data = json.loads(self._auth_file.read_text(encoding="utf-8"))
                    self._jwt_secret = data.get("jwt_secret")
                except (OSError, json.JSONDecodeError) as e:
                    logger.error(f"Failed to load auth file: {e}")

            if not self._jwt_secret:
                self._jwt_secret = secrets.token_hex(32)
                self._save_auth_file()

        logger.info("Operator auth manager initialized (async init pending)")

    async def initialize_async(self) -> None:
        """
        Async initialization - checks PostgreSQL for existing users.
        If no users exist, setup is required (first account becomes admin).
        """
        from services.database import get_database

        db = await get_database()
        if not db.available:
            logger.info("PostgreSQL unavailable for operator accounts, using in-memory fallback")
            self._db_available = False
            self._setup_required = not self._memory_users
            return

        self._db_available = True

        if os.environ.get("ADMIN_RESET", "false").lower() == "true":
            await db.execute("DELETE FROM users")
            logger.warning("ADMIN_RESET=true: all users deleted")

        count = await db.fetchval("SELECT COUNT(*) FROM users")
        self._setup_required = not count
        if self._setup_required:
            logger.info("No operator accounts found. Register the first (admin) account.")
        else:
            logger.info(f"Operator auth ready: {count} account(s) in database")

    @property
    def setup_required(self) -> bool:
        return self._setup_required

    @property
    def db_available(self) -> bool:
        return self._db_available

    async def _database(self):
        """Return the live database or None (and switch to memory) if it went away."""
        if not self._db_available:
            return None
        from services.database import get_database

        db = await get_database()
        if not db.available:
            logger.warning("PostgreSQL entered fallback mode; operator accounts now in memory")
            self._db_available = False
            return None
        return db

    # =========================================================================
    # Accounts
    # =========================================================================

    async def register_user(self, username: str, password: str) -> dict:
        """
        Register a new account. First account becomes admin.

        Returns:
            Dict with id, username, role.

        Raises:
            ValueError if username taken or invalid, or password too short.
        """
        username = (username or "").strip()
        if len(password or "") < 8:
            raise ValueError("Password must be at least 8 characters")
        if len(username) < 2 or len(username) > 50:
            raise ValueError("Username must be 2-50 characters")
        if not USERNAME_RE.match(username):
            raise ValueError(
                "Username must start with a letter and contain only "
                "letters, numbers, underscores, and hyphens"
            )

        password_hash = _hash_password(password)

        db = await self._database()
        if db is not None:
            async with db.transaction() as conn:
                count = await conn.fetchval("SELECT COUNT(*) FROM users")
                role = ROLE_ADMIN if count == 0 else ROLE_OPERATOR
                row = await conn.fetchrow(
                    "INSERT INTO users (username, password_hash, role) "
                    "VALUES ($1, $2, $3) ON CONFLICT (username) DO NOTHING "
                    "RETURNING id, username, role",
                    username, password_hash, role,
                )
            if row is None:
                raise ValueError(f"Username '{username}' is already taken")
            user = dict(row)
        else:
            if username in self._memory_users:
                raise ValueError(f"Username '{username}' is already taken")
            role = ROLE_ADMIN if not self._memory_users else ROLE_OPERATOR
            user = {"id": len(self._memory_users) + 1, "username": username, "role": role}
            self._memory_users[username] = {**user, "password_hash": password_hash}

        self._setup_required = False
        logger.info(f"Registered {user['role']} account '{username}'")
        return user

    async def verify_login(self, username: str, password: str) -> Optional[dict]:
        """
        Verify username/password.

        Returns:
            {id, username, role} on success, None on failure.
        """
        db = await self._database()
        if db is not None:
            user = await db.fetchrow(
                "SELECT id, username, password_hash, role FROM users WHERE username = $1",
                username,
            )
        else:
            user = self._memory_users.get(username)

        if not user or not _check_password(password, user["password_hash"]):
            return None
        return {"id": user["id"], "username": user["username"], "role": user["role"]}

    async def get_operator(self, operator_id: str) -> Optional[dict]:
        """Look up an account by id. Returns {operator_id, username, role} or None."""
        try:
            user_id = int(str(operator_id).strip())
        except ValueError:
            return None

        db = await self._database()
        if db is not None:
            user = await db.fetchrow("SELECT id, username, role FROM users WHERE id = $1", user_id)
        else:
            user = next((u for u in self._memory_users.values() if u["id"] == user_id), None)

        if not user:
            return None
        return {"operator_id": str(user["id"]), "username": user["username"], "role": user["role"]}

    async def require_operator(self, operator_id: str) -> dict:
        """Like get_operator, but raises NotFoundError for unknown ids."""
        operator = await self.get_operator(operator_id)
        if operator is None:
            raise NotFoundError(
                f"Operator not found: {operator_id}",
                resource_type="operator",
                resource_id=str(operator_id),
            )
        return operator

    # =========================================================================
    # JWT Token Management
    # =========================================================================

    def create_token(self, user_id: int, username: str, role: str) -> dict:
        """Create a JWT token. Returns {token, expires_at}."""
        if not self._jwt_secret:
            raise ValueError("No JWT secret configured")

        expires_at = time.time() + (JWT_EXPIRY_HOURS * 3600)
        payload = {
            "sub": str(user_id),
            "username": username,
            "role": role,
            "iat": time.time(),
            "exp": expires_at,
        }
        token = jwt.encode(payload, self._jwt_secret, algorithm=JWT_ALGORITHM)
        return {
            "token": token,
            "expires_at": datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat(),
        }

    def verify_token(self, token: str) -> Optional[dict]:
        """
        Verify a JWT token.

        Returns:
            {operator_id, username, role} or None if invalid or expired.
        """
        if not self._jwt_secret or not token:
            return None
        try:
            payload = jwt.decode(token, self._jwt_secret, algorithms=[JWT_ALGORITHM])
        except jwt.InvalidTokenError:
            # Includes ExpiredSignatureError
            return None
        return {
            "operator_id": str(payload.get("sub", "")),
            "username": payload.get("username", ""),
            "role": payload.get("role", ROLE_OPERATOR),
        }

    # =========================================================================
    # Internal
    # =========================================================================

    def _save_auth_file(self) -> None:
        """Persist the JWT secret to disk."""
        self._auth_file.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "jwt_secret": self._jwt_secret,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        self._auth_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
        try:
            self._auth_file.chmod(0o600)
        except OSError:
            pass


def get_auth_manager() -> AdminAuthManager:
    """Get the singleton auth manager."""
    return AdminAuthManager.get_instance()


def set_auth_manager(manager: Optional[AdminAuthManager]) -> None:
    AdminAuthManager._instance = manager


# =============================================================================
# FastAPI Dependencies
# =============================================================================


async def verify_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> dict:
    """
    Auth dependency for any logged-in operator (admins included).

    Returns:
        Dict with operator_id, username, role from the JWT.

    Raises:
        AuthError (401) if the token is missing or invalid
    """
    if not credentials or not credentials.credentials:
        raise AuthError("Authentication required", code=ErrorCode.AUTH_MISSING_TOKEN)

    identity = get_auth_manager().verify_token(credentials.credentials)
    if not identity:
        raise AuthError("Invalid or expired token")
    return identity


async def verify_admin(identity: dict = Depends(verify_operator)) -> dict:
    """Auth dependency for admin-only endpoints (provider configuration)."""
    if identity["role"] != ROLE_ADMIN:
        raise ForbiddenError("Admin role required", operator_id=identity["operator_id"])
    return identity
