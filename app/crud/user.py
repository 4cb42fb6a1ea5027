# app/crud/user.py
from sqlalchemy.orm import Session
from app.models.user import User
from app.models.shop import Shop


def get_user_by_id(db: Session, user_id: int) -> User | None:
    """Получает пользователя по его первичному ключу (ID в нашей БД)."""
    return db.query(User).filter(User.id == user_id).first()

def get_reachable_customers_with_location(db: Session) -> list[User]:
    """Покупатели с координатами, которым можно писать в WhatsApp."""
    return db.query(User).filter(
        User.is_shop_owner == False,
        User.whatsapp_accessible == True,
        User.latitude.isnot(None),
        User.longitude.isnot(None)
    ).all()

def mark_whatsapp_inaccessible(db: Session, user: User):
    user.whatsapp_accessible = False
    db.add(user)
    db.commit()


# --- Магазины ---

def get_shop_by_id(db: Session, shop_id: int) -> Shop | None:
    return db.query(Shop).filter(Shop.id == shop_id).first()

