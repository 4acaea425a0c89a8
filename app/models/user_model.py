# app/models/user_model.py
from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.utils.database import Base


class User(Base):
    """
    Ban-relevant projection of a library member.
    Credentials live with the auth service; only role/ban/contact data is kept here.
    """
    __tablename__ = "users"

    user_id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, nullable=False)
    email = Column(String(255), nullable=True)

    # user / admin
    role = Column(String(20), nullable=False, server_default="user")

    ban_until = Column(DateTime, nullable=True)
    is_permanent_ban = Column(Boolean, nullable=False, server_default="false", default=False)

    created_on = Column(DateTime, server_default=func.now())

    loans = relationship("Loan", back_populates="user", passive_deletes=True)

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"
