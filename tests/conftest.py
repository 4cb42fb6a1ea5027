# tests/conftest.py
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from app.clients.whatsapp import whatsapp_client
from app.core.config import settings
from app.db.session import Base, SessionLocal
# Импортируем все модели для создания таблиц
from app.models.claim import DealClaim
from app.models.deal import Deal, DealStatus
from app.models.notification import NotificationLog
from app.models.shop import Shop
from app.models.user import User
from app.services.claim import register_claim
from app.utils.clock import utcnow


SHOP_LAT, SHOP_LNG = 12.9716, 77.5946


@pytest.fixture(autouse=True)
def no_send_pause(monkeypatch):
    monkeypatch.setattr(settings, "NOTIFICATION_SEND_PAUSE_SECONDS", 0)


@pytest.fixture(scope="function")
def db_session(tmp_path) -> Session:
    """
    Фикстура для создания чистой базы данных для каждого теста.
    База файловая: фоновые задачи открывают свои сессии (в том числе из других потоков),
    и им нужна та же база, что и тесту.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'flash_deals.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal.configure(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def whatsapp_send(mocker):
    """Все исходящие сообщения WhatsApp перехватываются."""
    return mocker.patch.object(whatsapp_client, "send", new_callable=AsyncMock, return_value={"messages": []})


@pytest.fixture
def owner(db_session) -> User:
    user = User(phone="919800000001", name="Ravi", is_shop_owner=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def shop(db_session, owner) -> Shop:
    shop = Shop(owner_id=owner.id, name="Chai Point", latitude=SHOP_LAT, longitude=SHOP_LNG)
    db_session.add(shop)
    db_session.commit()
    return shop


@pytest.fixture
def make_customers(db_session):
    """Создает покупателей в паре сотен метров от магазина."""
    counter = {"n": 0}

    def _make(count: int, **fields) -> list[User]:
        customers = []
        for _ in range(count):
            counter["n"] += 1
            customer = User(
                phone=f"91990000{counter['n']:04d}",
                name=f"Customer {counter['n']}",
                latitude=SHOP_LAT + 0.001,
                longitude=SHOP_LNG + 0.001,
                **fields
            )
            db_session.add(customer)
            customers.append(customer)
        db_session.commit()
        return customers

    return _make


@pytest.fixture
def make_deal(db_session, shop):
    """Живая акция: стартовала 5 минут назад, таймер 30 минут."""
    def _make(**overrides) -> Deal:
        now = utcnow()
        time_limit = overrides.pop("time_limit_minutes", 30)
        starts_at = overrides.pop("starts_at", now - timedelta(minutes=5))
        fields = dict(
            shop_id=shop.id,
            title="Masala Chai",
            discount_percent=20,
            target_claims=30,
            time_limit_minutes=time_limit,
            starts_at=starts_at,
            expires_at=starts_at + timedelta(minutes=time_limit),
            status=DealStatus.LIVE,
            current_claims=0,
            notified_customers_count=0,
            milestones_notified=[],
            current_chain_level=0,
        )
        fields.update(overrides)
        deal = Deal(**fields)
        db_session.add(deal)
        db_session.commit()
        return deal

    return _make


@pytest.fixture
def claim_many(db_session):
    """Регистрирует заявки покупателей по очереди, с заданным временем заявки."""
    def _claim(deal: Deal, customers: list[User], now=None) -> list:
        results = []
        for customer in customers:
            result, _ = register_claim(db_session, deal.id, customer.id, now=now)
            results.append(result)
        return results

    return _claim


@pytest.fixture
def auth_headers():
    """Заголовок с JWT, как его выпускает сервис аккаунтов."""
    def _headers(user: User) -> dict:
        token = jwt.encode({"sub": str(user.id)}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest_asyncio.fixture
async def client(db_session):
    from app.core.limiter import limiter
    from app.main import app

    limiter.enabled = False
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    limiter.enabled = True
