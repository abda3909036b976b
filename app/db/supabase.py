"""
Cliente Supabase do backend (service role) e validação de tokens de usuário.
"""
import base64
import json
import logging

from supabase import Client, create_client

from app.config import settings

logger = logging.getLogger(__name__)

_client: Client | None = None


def _jwt_claim(token: str, claim: str) -> str | None:
    try:
        _, payload, _ = token.split(".")
        raw = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
        value = json.loads(raw).get(claim)
    except (ValueError, UnicodeDecodeError, AttributeError):
        return None
    return value if isinstance(value, str) else None


def backend_key() -> str:
    return settings.supabase_service_role_key or settings.supabase_key


def is_service_role(key: str) -> bool:
    if key.startswith("sb_secret_"):
        return True
    if key.startswith(("sb_publishable_", "sbp_")):
        return False
    return _jwt_claim(key, "role") == "service_role"


def get_db() -> Client:
    """Process-wide client. Queries filter by organization_id themselves,
    so the key must bypass RLS."""
    global _client
    if _client is None:
        key = backend_key()
        if not is_service_role(key):
            logger.critical(
                "Supabase key is not service-role; writes on boletos/settings will fail under RLS. "
                "Set SUPABASE_SERVICE_ROLE_KEY."
            )
        _client = create_client(settings.supabase_url, key)
    return _client


def get_user_id_from_jwt(jwt: str) -> str | None:
    """Validate a user access token against Supabase Auth. Returns the user id."""
    try:
        resp = get_db().auth.get_user(jwt)
    except Exception as e:
        logger.info("Supabase auth rejected token: %s", e)
        return None
    user = getattr(resp, "user", None)
    return user.id if user else None
