"""
Admin Router - operator accounts and AI provider configuration

Auth endpoints are open (first-run setup, login); provider configuration
requires an admin JWT.
"""

import logging

from fastapi import APIRouter
from fastapi.security import HTTPBearer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])
_bearer_scheme = HTTPBearer(auto_error=False)

# Import all sub-modules to register their routes on the shared router
from . import auth
from . import providers
