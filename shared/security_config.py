from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import re

from shared.utils import settings

# --- Rate Limiting ---
# Initialize Limiter
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        # Security Headers
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data: https:; object-src 'none'; frame-ancestors 'none';"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response

# --- Input Sanitization ---
# Control characters except tab and newline
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

def sanitize_input(text: str) -> str:
    """
    Sanitize input string:
    - Strip whitespace
    - Drop control characters (they would corrupt the chat message)
    """
    if not isinstance(text, str):
        return text

    # Strip whitespace
    clean_text = text.strip()

    clean_text = _CONTROL_CHARS.sub("", clean_text)

    return clean_text
