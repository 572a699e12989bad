import hmac
import os

from fastapi import HTTPException, Request

# Bearer tokens longer than this are rejected before comparison
MAX_TOKEN_LENGTH = 512


def get_admin_token() -> str:
    """Get admin token from environment variable.

    The token is cached on first access to avoid repeated environment
    variable lookups and reduce timing attack window.

    Raises:
        ValueError: If ADMIN_TOKEN environment variable is not set
    """
    if not hasattr(get_admin_token, "_cached_token"):
        token = os.getenv("ADMIN_TOKEN")
        if token is not None:
            # Normalize accidental whitespace/newline from env/secret stores.
            token = token.strip()
        if not token:
            raise ValueError(
                "ADMIN_TOKEN environment variable is not set. "
                "Please set a secure admin token before starting the server."
            )
        get_admin_token._cached_token = token
    return get_admin_token._cached_token


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Args:
        request: The incoming request

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin(request: Request) -> str:
    """Validate admin token for the admin API.

    Args:
        request: The incoming request

    Returns:
        Admin identifier if valid

    Raises:
        HTTPException: 401 if admin token is missing or invalid
        HTTPException: 400 if the token is too long
    """
    token = get_bearer_token(request)
    expected_token = get_admin_token()

    # Always compare, even without a token, so timing does not leak presence
    if token is None:
        token = ""

    if len(token) > MAX_TOKEN_LENGTH:
        raise HTTPException(status_code=400, detail="Token too long (max 512 characters)")

    if not hmac.compare_digest(token.encode(), expected_token.encode()):
        # Use consistent error message to prevent token enumeration
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
