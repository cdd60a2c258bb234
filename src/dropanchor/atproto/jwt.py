"""
Access token inspection.

Access tokens issued by the token endpoint are JWTs. The client never verifies
them (that is the PDS's job) but reads the ``exp`` claim to learn when the token
expires if the token response did not say.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from jwcrypto import jws
from jwcrypto.common import JWException

logger = logging.getLogger(__name__)


def unverified_claims(token: str) -> Optional[Dict[str, Any]]:
    """Decode the claims of a compact JWS without checking its signature."""
    try:
        token_jws = jws.JWS()
        token_jws.deserialize(token)
        payload = token_jws.objects.get("payload")
        if payload is None:
            return None
        claims = json.loads(payload)
    except (JWException, ValueError) as e:
        logger.debug(f"Access token is not a readable JWT: {e}")
        return None

    if not isinstance(claims, dict):
        return None
    return claims


def token_expiry(token: str) -> Optional[datetime]:
    """Return the ``exp`` claim of ``token`` as an aware UTC datetime, if present."""
    claims = unverified_claims(token)
    if claims is None:
        return None

    exp = claims.get("exp")
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        return None
    try:
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
