from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from constants import JWT_SECRET, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES, DIRECTORY_TIMEOUT_SECONDS
from relay.blocking import run_in_thread
from relay.errors import Unauthorized
from logging_config import get_logger

logger = get_logger(__name__)


class UserIdentity(BaseModel):
    user_id: str
    username: str


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None,
                        secret: str = JWT_SECRET, algorithm: str = ALGORITHM) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret, algorithm=algorithm)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


class IdentityVerifier:
    """verify(credential) -> UserIdentity, or Unauthorized."""

    def __init__(self, users, secret: str = JWT_SECRET, algorithm: str = ALGORITHM,
                 timeout: float = DIRECTORY_TIMEOUT_SECONDS):
        self.users = users
        self.secret = secret
        self.algorithm = algorithm
        self.timeout = timeout

    def issue(self, user) -> str:
        return create_access_token(
            {"sub": user.id, "username": user.username}, secret=self.secret, algorithm=self.algorithm
        )

    def decode(self, credential: Optional[str]) -> str:
        if not credential:
            raise Unauthorized("No token, authorization denied")
        try:
            payload = jwt.decode(credential, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            logger.debug(f"Rejected token: {e}")
            raise Unauthorized()
        user_id = payload.get("sub")
        if not user_id:
            raise Unauthorized()
        return user_id

    async def load_user(self, credential: Optional[str]):
        user_id = self.decode(credential)
        user = await run_in_thread(self.users.get_user, user_id, timeout=self.timeout)
        if user is None:
            logger.warning(f"Token names unknown user {user_id}")
            raise Unauthorized()
        return user

    async def verify(self, credential: Optional[str]) -> UserIdentity:
        user = await self.load_user(credential)
        return UserIdentity(user_id=user.id, username=user.username)
