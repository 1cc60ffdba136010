import secrets

from fastapi import Header, HTTPException, Query, Request


def token_matches(expected: str | None, provided: str | None) -> bool:
    if not expected:
        return True
    return provided is not None and secrets.compare_digest(provided.encode(), expected.encode())


def _bearer(authorization: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


def require_api_token(
    request: Request,
    x_api_token: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
    token: str | None = Query(default=None),
) -> None:
    """Shared-secret check; x-api-token header, ?token= or Authorization: Bearer."""
    expected = request.app.state.settings.expected_token
    provided = x_api_token or token or _bearer(authorization)
    if not token_matches(expected, provided):
        raise HTTPException(status_code=401, detail="Unauthorized")
