import re
from typing import List

from tools import config

SECURITY_HEADERS = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "X-DNS-Prefetch-Control": "off",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Cross-Origin-Embedder-Policy": "require-corp",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
}

WEBHOOK_ORIGINS = [
    # Meta (Facebook, Instagram)
    "https://facebook.com",
    "https://*.facebook.com",
    "https://graph.facebook.com",
    "https://instagram.com",
    "https://*.instagram.com",
    # Google
    "https://googleads.g.doubleclick.net",
    "https://*.googleads.com",
    "https://*.google.com",
    "https://ads.google.com",
    "https://googleadservices.com",
    # TikTok
    "https://tiktok.com",
    "https://*.tiktok.com",
    "https://*.tiktokcdn.com",
    # Pinterest
    "https://pinterest.com",
    "https://*.pinterest.com",
    # Snapchat
    "https://snapchat.com",
    "https://*.snapchat.com",
    "https://*.snap.com",
    # Form builders
    "https://*.typeform.com",
    "https://*.wufoo.com",
    "https://*.jotform.com",
    "https://*.formstack.com",
    "https://*.gravity.com",
    "https://*.hubspot.com",
    "https://*.mailchimp.com",
    "https://*.constantcontact.com",
]

DEVELOPMENT_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:3001",
]

CORS_ALLOWED_METHODS = ["POST", "GET", "OPTIONS"]

CORS_ALLOWED_HEADERS = [
    "Content-Type",
    "Authorization",
    "X-Api-Key",
    "X-Signature-256",
    "X-Hub-Signature-256",
    "X-Goog-Signature",
    "X-Goog-Timestamp",
    "X-Tiktok-Signature",
    "X-Pinterest-Signature",
    "X-Snapchat-Signature",
    "X-Timestamp",
    "X-Platform",
]

CORS_EXPOSED_HEADERS = [
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "X-RateLimit-Window",
    "Retry-After",
]

CORS_MAX_AGE = 86400


def allowed_origins() -> List[str]:
    origins = list(WEBHOOK_ORIGINS)
    if config.is_development():
        origins.extend(DEVELOPMENT_ORIGINS)
    return origins


def origin_pattern(origin: str) -> str:
    """``https://*.facebook.com`` matches any subdomain depth, never the bare domain."""
    return re.escape(origin).replace(r"\*", r"[a-z0-9-]+(?:\.[a-z0-9-]+)*")


def origin_regex(origins: List[str]) -> str:
    return "(?i)(?:" + "|".join(origin_pattern(o) for o in origins) + ")"


def is_origin_allowed(origin: str, origins: List[str] = None) -> bool:
    if not origin:
        return False
    return re.fullmatch(origin_regex(origins or allowed_origins()), origin) is not None
