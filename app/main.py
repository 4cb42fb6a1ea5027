# app/main.py

import asyncio
import traceback
import logging
from contextlib import asynccontextmanager
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

# Конфигурация и ядро
from app.core.config import settings as config
from app.core.exceptions import FlashDealError
from app.core.limiter import limiter
from app.core.logging_config import setup_logging
from app.core.redis import redis_client
from app.clients.whatsapp import whatsapp_client

# Роутеры FastAPI
from app.routers.v1.api import api_router as api_v1_router

# Фоновые задачи и сервисы
from app.services.expiry_sweep import run_expiry_sweep, wait_for_pending_resolutions
from app.services.deal_launcher import launch_scheduled_deals_task
from app.services.notification_cleanup import cleanup_old_notifications_task
from app.bot.services import notification as bot_notification_service

# --- Инициализация ---
logger = logging.getLogger(__name__)
scheduler = AsyncIOScheduler()

# --- Обработчики ошибок ---
async def flash_deal_exception_handler(request: Request, exc: FlashDealError):
    """Доменные ошибки отдаем клиенту с их HTTP-статусом и машинным кодом."""
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )

async def unhandled_exception_handler(request: Request, exc: Exception):
    """
    Глобальный обработчик для всех необработанных исключений.
    Логирует ошибку и отправляет уведомление администраторам.
    """
    logger.critical(f"Unhandled exception for request: {request.method} {request.url}", exc_info=True)

    error_details = "".join(traceback.format_exception(exc))
    client = f"{request.client.host}:{request.client.port}" if request.client else "unknown"

    error_message = (
        f"🚨 *Critical API error!*\n\n"
        f"*URL:* {request.method} {request.url}\n"
        f"*Client:* {client}\n\n"
        f"*Traceback:*\n```{error_details}```"
    )

    asyncio.create_task(
        bot_notification_service.send_error_to_admins(error_message)
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error. The administrator has been notified."},
    )

# --- Lifespan Manager (запуск и остановка приложения) ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Application lifespan startup...")

    # Надежная блокировка через Redis: планировщик запускается только в одном воркере
    is_main_worker = await redis_client.set("app_startup_lock", "1", ex=60, nx=True)

    if is_main_worker:
        logger.info("This is the main worker. Starting scheduler...")

        if not scheduler.running:
            scheduler.add_job(
                run_expiry_sweep, 'interval', seconds=config.SWEEP_INTERVAL_SECONDS,
                id="flash_deal_expiry_sweep", max_instances=1, coalesce=True
            )
            scheduler.add_job(
                launch_scheduled_deals_task, 'interval', seconds=config.SWEEP_INTERVAL_SECONDS,
                id="flash_deal_launcher", max_instances=1, coalesce=True
            )
            scheduler.add_job(cleanup_old_notifications_task, 'cron', hour=5, minute=30, timezone='UTC')
            scheduler.start()
            logger.info("Scheduler started with background jobs.")
    else:
        logger.info("This is a secondary worker. Skipping scheduler setup.")

    yield

    # Код при остановке
    if is_main_worker:
        logger.info("Main worker shutting down...")
        if scheduler.running:
            scheduler.shutdown()
            logger.info("Scheduler shut down.")
        await wait_for_pending_resolutions()

        await redis_client.delete("app_startup_lock")
    else:
        logger.info("Secondary worker shutting down.")

    await whatsapp_client.close()

# --- Создание FastAPI приложения ---
app = FastAPI(
    title="Flash Deals Service",
    description="Group-buying flash deals: claims, activation and expiry for local shops",
    version="0.1.0",
    lifespan=lifespan
)

# --- Лимиты запросов ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Регистрация обработчиков исключений ---
app.add_exception_handler(FlashDealError, flash_deal_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# --- Подключение роутеров FastAPI ---
api_router = APIRouter(prefix="/api")
api_router.include_router(api_v1_router)

app.include_router(api_router)
