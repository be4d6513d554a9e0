import hmac
import os

from fastapi import HTTPException, Request


def get_admin_token() -> str:
    """Get admin token from environment variable.

    Raises:
        HTTPException: 503 if ADMIN_TOKEN is not configured, so the admin
            surface stays closed instead of accepting an empty token
    """
    token = (os.getenv("ADMIN_TOKEN") or "").strip()
    if not token:
        raise HTTPException(status_code=503, detail="Admin API is not configured")
    return token


def get_bearer_token(request: Request) -> str | None:
    """Extract the bearer token from the Authorization header."""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    token = auth[7:].strip()
    return token or None


def require_admin(request: Request) -> str:
    """Validate admin token for protected endpoints.

    Returns:
        Admin identifier if valid

    Raises:
        HTTPException: 401 if admin token is missing or invalid
    """
    expected_token = get_admin_token()
    # Use empty string if token is None to prevent timing differences
    token = get_bearer_token(request) or ""

    # Use constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(token.encode(), expected_token.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
