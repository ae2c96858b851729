"""
Auth endpoints (no auth required except registering further operators).
"""

from typing import Dict, Any, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials

from . import router, _bearer_scheme
from .models import LoginRequest, RegisterRequest
from errors import AuthError, ErrorCode, ValidationError
from services.admin_auth import get_auth_manager, verify_admin, verify_operator


@router.get("/auth/status")
async def get_auth_status() -> Dict[str, Any]:
    """Check if first-run setup is required (no auth needed)."""
    auth = get_auth_manager()
    return {"setup_required": auth.setup_required}


@router.post("/auth/register", status_code=201)
async def register(
    request: RegisterRequest,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Dict[str, Any]:
    """
    Register an account.

    The first account is created without auth and becomes admin.
    After that only an admin can add operators.
    """
    auth = get_auth_manager()

    if not auth.setup_required:
        await verify_admin(await verify_operator(credentials))

    try:
        user = await auth.register_user(request.username, request.password)
    except ValueError as e:
        raise ValidationError(str(e), code=ErrorCode.VALIDATION_INVALID_FORMAT, parameter="username")

    token_data = auth.create_token(user["id"], user["username"], user["role"])
    is_first = user["role"] == "admin"

    return {
        "success": True,
        "message": "Admin account created" if is_first else "Operator account created",
        "operator_id": str(user["id"]),
        "username": user["username"],
        "role": user["role"],
        "token": token_data["token"],
        "expires_at": token_data["expires_at"],
    }


@router.post("/auth/login")
async def login(request: LoginRequest) -> Dict[str, Any]:
    """Login with username and password, returns JWT."""
    auth = get_auth_manager()

    if auth.setup_required:
        raise AuthError(
            "No admin account configured. Create your account first.",
            code=ErrorCode.AUTH_INVALID_CREDENTIALS,
        )

    user = await auth.verify_login(request.username, request.password)
    if not user:
        raise AuthError("Invalid username or password", code=ErrorCode.AUTH_INVALID_CREDENTIALS)

    token_data = auth.create_token(user["id"], user["username"], user["role"])

    return {
        "success": True,
        "operator_id": str(user["id"]),
        "username": user["username"],
        "role": user["role"],
        "token": token_data["token"],
        "expires_at": token_data["expires_at"],
    }


@router.get("/auth/verify")
async def verify_token_endpoint(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Dict[str, Any]:
    """Verify if a stored JWT token is still valid (no auth required to call)."""
    if not credentials or not credentials.credentials:
        return {"valid": False}
    identity = get_auth_manager().verify_token(credentials.credentials)
    if identity:
        return {"valid": True, **identity}
    return {"valid": False}
