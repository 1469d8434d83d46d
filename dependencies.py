from fastapi import Header, Request
from typing import Optional

from backend import user_store
from relay.identity import IdentityVerifier, bearer_token
from schemas.users import User

verifier = IdentityVerifier(user_store)


def get_registry(request: Request):
    return request.app.state.registry


async def get_current_user(authorization: Optional[str] = Header(None)) -> User:
    return await verifier.load_user(bearer_token(authorization))
