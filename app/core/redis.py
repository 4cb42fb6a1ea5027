# app/core/redis.py
import logging

import redis.asyncio as redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from app.core.config import settings

logger = logging.getLogger(__name__)

# Создаем асинхронный клиент Redis
# decode_responses=True автоматически декодирует ответы из байтов в строки
redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)

async def acquire_lock(name: str, ttl_seconds: int) -> Lock | None:
    """
    Пытается захватить распределенную блокировку без ожидания.
    Значение ключа - случайный токен владельца, блокировка сама истекает через ttl_seconds.
    """
    lock = redis_client.lock(name, timeout=ttl_seconds, blocking=False)
    if await lock.acquire():
        return lock
    return None

async def release_lock(lock: Lock) -> None:
    """Снимает блокировку, только если ключ все еще хранит наш токен."""
    try:
        await lock.release()
    except LockError:
        logger.warning(f"Lock '{lock.name}' expired before release and was not deleted.")
