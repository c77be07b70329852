import time, jwt, logging
from typing import Dict, Optional, Union
import stripe
from common.settings import settings
from common.error_handling import InvalidSignature

ALGO = "HS256"

logger = logging.getLogger(__name__)

def mint_internal_jwt(aud: str, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "aud": aud,
        "iat": now,
        "exp": now + settings.internal_jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    options = {"require": ["exp", "iat", "iss"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        options=options,
        issuer=settings.jwt_issuer,
    )

def verify_webhook_signature(
    payload: Union[bytes, str],
    signature: Optional[str],
    secret: str,
    tolerance: Optional[int] = None,
) -> str:
    """Check a Stripe-Signature header against the raw body.

    Returns the decoded body. Raises InvalidSignature without looking at the
    payload contents when the header is missing, stale or does not match.
    """
    if not secret:
        # a misconfigured endpoint must not accept anything
        raise InvalidSignature("Webhook secret is not configured")
    if not signature:
        raise InvalidSignature("Missing Stripe-Signature header")
    try:
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    except UnicodeDecodeError:
        raise InvalidSignature("Webhook body is not valid UTF-8")
    try:
        stripe.WebhookSignature.verify_header(
            body,
            signature,
            secret,
            tolerance if tolerance is not None else settings.stripe_signature_tolerance,
        )
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed", extra={"reason": str(e)})
        raise InvalidSignature("Invalid webhook signature")
    return body
