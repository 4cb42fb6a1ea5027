# app/dependencies.py

import logging
from typing import Optional, Iterator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from jose import JWTError, jwt
from fastapi import Request
from app.core.config import settings
from app.db.session import SessionLocal
from app.models.user import User

# --- Инициализация логгера ---
logger = logging.getLogger(__name__)

# --- Схемы аутентификации ---
strict_bearer_scheme = HTTPBearer(auto_error=True)
optional_bearer_scheme = HTTPBearer(auto_error=False)

# --- Управление сессией БД ---
def get_db() -> Iterator[Session]:
    """
    Основная зависимость FastAPI для получения сессии БД.
    Это генератор, который корректно работает с `Depends`.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# --- Зависимости аутентификации и авторизации ---

def _decode_user_id(token: str) -> Optional[int]:
    """Достает ID пользователя из поля 'sub'. None, если токен невалиден."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT Error during token decoding: {e}")
        return None
    user_id = payload.get("sub")
    if user_id is None:
        logger.warning("Token payload is missing 'sub' (user_id).")
        return None
    try:
        return int(user_id)
    except (TypeError, ValueError):
        logger.warning(f"Token 'sub' is not a user ID: {user_id!r}")
        return None


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(strict_bearer_scheme),
    db: Session = Depends(get_db)
) -> User:
    """
    ОБЯЗАТЕЛЬНАЯ зависимость.
    Требует валидный токен. Если его нет или он невалиден - вызывает ошибку 401.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    user_id = _decode_user_id(credentials.credentials)
    if user_id is None:
        raise credentials_exception

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.warning(f"User with ID {user_id} from token not found in DB.")
        raise credentials_exception
    request.state.user = user
    logger.debug(f"Successfully authenticated user ID: {user.id}")
    return user


def get_optional_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_bearer_scheme),
    db: Session = Depends(get_db)
) -> Optional[User]:
    """
    ОПЦИОНАЛЬНАЯ зависимость.
    Если токен предоставлен и валиден - возвращает пользователя, иначе None.
    """
    if not credentials:
        return None

    user_id = _decode_user_id(credentials.credentials)
    if user_id is None:
        return None

    user = db.query(User).filter(User.id == user_id).first()
    request.state.user = user
    if user is None:
        logger.warning(f"Optional user with ID {user_id} from token not found in DB.")
    return user


def get_shop_owner(current_user: User = Depends(get_current_user)) -> User:
    """Эндпоинты управления акциями доступны только владельцам магазинов."""
    if not current_user.is_shop_owner:
        logger.warning(f"User {current_user.id} is not a shop owner.")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only shop owners can manage flash deals."
        )
    return current_user


def get_admin_user(current_user: User = Depends(get_current_user)) -> User:
    """
    Зависимость для защиты админских эндпоинтов.
    Проверяет, есть ли номер пользователя в ADMIN_PHONE_NUMBERS.
    """
    if current_user.phone not in settings.ADMIN_PHONE_NUMBERS:
        logger.warning(f"Permission denied for user {current_user.id}: not in ADMIN_PHONE_NUMBERS.")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to access this resource."
        )

    logger.info(f"Admin access GRANTED for user {current_user.id}.")
    return current_user
