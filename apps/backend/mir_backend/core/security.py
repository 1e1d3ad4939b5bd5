import hashlib
import hmac

from .config import get_settings
from .errors import WebhookSignatureError

SIGNATURE_PREFIX = "sha256="


class InsecureSecretError(Exception):
    pass


WEAK_SECRETS = {
    "a-random-string",
    "change-me",
    "development",
    "secret",
    "webhook-secret",
}


def get_webhook_secret() -> str:
    """Raises InsecureSecretError if secret empty, or weak in production"""
    settings = get_settings()
    secret = settings.webhook_secret

    if not secret:
        raise InsecureSecretError("WEBHOOK_SECRET must be set")

    if settings.environment == "production" and secret in WEAK_SECRETS:
        raise InsecureSecretError(
            "Production environment detected with weak WEBHOOK_SECRET"
        )

    return secret


def sign_payload(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(
        key=secret.encode("utf-8"),
        msg=raw_body,
        digestmod=hashlib.sha256,
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_webhook_signature(raw_body: bytes, signature_header: str | None, secret: str) -> None:
    """Constant-time check of X-Hub-Signature-256 over the raw bytes"""
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        raise WebhookSignatureError("missing or malformed signature header")

    expected = sign_payload(raw_body, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), signature_header.encode("utf-8")):
        raise WebhookSignatureError("signature mismatch")
