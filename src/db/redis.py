from redis.asyncio import Redis
from typing import Optional, Dict


def init_redis_client(
        REDIS_HOST,
        REDIS_PORT,
        REDIS_USERNAME=None,
        REDIS_PASSWORD=None,
        REDIS_DB: int = 0,
) -> Redis:
    """
    Initialize a Redis client conditionally with auth credentials if provided.
    """
    redis_config: Dict = {
        "host": REDIS_HOST,
        "port": REDIS_PORT,
        "db": REDIS_DB,
        "decode_responses": True,
        "socket_connect_timeout": 10,
        "socket_timeout": 30,
        "retry_on_timeout": True,
    }

    if REDIS_USERNAME:
        redis_config["username"] = REDIS_USERNAME

    if REDIS_PASSWORD:
        redis_config["password"] = REDIS_PASSWORD

    return Redis(**redis_config)


def make_cache_key(prefix: str, identifier: str, context: Optional[str] = None) -> str:
    return f"{prefix}:{identifier}:{context}" if context else f"{prefix}:{identifier}"
