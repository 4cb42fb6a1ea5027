# app/models/user.py

from sqlalchemy import Column, Integer, String, Boolean, Float, DateTime, func
from app.db.session import Base

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # Номер WhatsApp в международном формате без "+"
    phone = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)

    is_shop_owner = Column(Boolean, default=False, nullable=False, server_default='false')
    whatsapp_accessible = Column(Boolean, default=True, nullable=False, server_default='true')

    # Координаты нужны для рассылки о старте акции покупателям поблизости
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
