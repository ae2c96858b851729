"""
Pydantic models for admin API requests.
"""

from typing import Optional

from pydantic import BaseModel


class LoginRequest(BaseModel):
    username: str
    password: str


class RegisterRequest(BaseModel):
    username: str
    password: str


class ProviderUpdate(BaseModel):
    """Provider config update; omitted fields keep their stored value."""

    credential: Optional[str] = None
    model_override: Optional[str] = None
    enabled: Optional[bool] = None


class ProviderTestRequest(BaseModel):
    provider_id: str
    credential: str = ""
