import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

# Seconds a message stays displayable after it was sent
DEFAULT_MESSAGE_EXPIRY_SECONDS = int(os.getenv("DEFAULT_MESSAGE_EXPIRY_SECONDS", 60))

# Upper bound for a single Room Directory / user store call
DIRECTORY_TIMEOUT_SECONDS = float(os.getenv("DIRECTORY_TIMEOUT_SECONDS", 5))

STRICT_SENDER_VALIDATION = _env_bool("STRICT_SENDER_VALIDATION", True)
ECHO_TO_SENDER = _env_bool("ECHO_TO_SENDER", True)
REQUIRE_ROOM_PARTICIPANT = _env_bool("REQUIRE_ROOM_PARTICIPANT", True)

EXPIRY_SWEEP_ENABLED = _env_bool("EXPIRY_SWEEP_ENABLED", True)
EXPIRY_SWEEP_INTERVAL_SECONDS = float(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", 30))

OUTBOUND_QUEUE_SIZE = int(os.getenv("OUTBOUND_QUEUE_SIZE", 256))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# bcrypt work factor for password hashes
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))
