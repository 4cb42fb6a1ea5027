# app/routers/v1/api.py

from fastapi import APIRouter

from app.routers.v1.endpoints import deals, tasks

# Главный роутер API версии v1.
# Все пути, подключенные к нему, будут иметь префикс /api/v1
api_router = APIRouter(prefix="/v1")

api_router.include_router(deals.router, tags=["Flash Deals"])

# Админские эндпоинты
api_router.include_router(tasks.router, tags=["Admin Tasks"])
