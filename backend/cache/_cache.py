import redis.asyncio as redis
from backend.config.settings import config_settings

# connections are opened lazily on first command
redis_client = redis.Redis(
    host=config_settings.REDIS_HOST, port=config_settings.REDIS_PORT, db=config_settings.REDIS_DB,
    decode_responses=False)
