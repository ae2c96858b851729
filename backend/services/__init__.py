"""
Atelier Services - Shared infrastructure services.

- database / redis_client: connection managers with health checks and fallback
- chat_store: session, message, provider and presence persistence
- ai_router / llm_client / llm_config: AI provider catalog and routing
- presence: operator availability and session staffing
- admin_auth: operator accounts and JWTs
- transcript_export: PDF transcripts
"""

from .redis_client import RedisManager, get_redis

__all__ = ["RedisManager", "get_redis"]
