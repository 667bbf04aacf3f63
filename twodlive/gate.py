# Authorization Gate: FastAPI dependencies for protected routes.
from fastapi import Depends, Request

from .errors import Forbidden, InvalidToken, Unauthorized
from .security import Claim, TokenSigner


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


async def require_user(request: Request) -> Claim:
    token = bearer_token(request)
    if token is None:
        raise Unauthorized("missing bearer token")
    signer: TokenSigner = request.app.state.tokens
    try:
        claim = signer.verify(token)
    except InvalidToken:
        raise Unauthorized("invalid or expired token")
    request.state.claim = claim
    return claim


async def require_admin(claim: Claim = Depends(require_user)) -> Claim:
    if not claim.is_admin:
        raise Forbidden("admin privileges required")
    return claim
