from fastapi import APIRouter, HTTPException, Request
from schemas.users import LoginRequest, RegisterRequest, TokenResponse
from backend import user_store
from constants import DIRECTORY_TIMEOUT_SECONDS
from dependencies import verifier
from relay.blocking import run_in_thread
from routers.users import profile_of
from logging_config import get_logger

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/auth", tags=["auth"])


@auth_router.post("/register", response_model=TokenResponse, status_code=201)
async def register(body: RegisterRequest, request: Request):
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Registration request for {body.username} from {client_host}")
    user = await run_in_thread(
        user_store.create_user, body.username, body.password,
        name=body.name, email=body.email, timeout=DIRECTORY_TIMEOUT_SECONDS,
    )
    return TokenResponse(access_token=verifier.issue(user), user=profile_of(user))


@auth_router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, request: Request):
    user = await run_in_thread(user_store.authenticate, body.username, body.password, timeout=DIRECTORY_TIMEOUT_SECONDS)
    if user is None:
        logger.warning(f"Failed login for {body.username}")
        raise HTTPException(status_code=401, detail="Invalid credentials")
    logger.info(f"User {user.username} logged in")
    return TokenResponse(access_token=verifier.issue(user), user=profile_of(user))
