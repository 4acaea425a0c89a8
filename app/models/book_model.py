# app/models/book_model.py
from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.utils.database import Base


class Book(Base):
    __tablename__ = "books"

    book_id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False, index=True)
    author = Column(String(255), nullable=True)

    # flipped false by a borrow, back to true by a return
    available = Column(Boolean, nullable=False, server_default="true", default=True)

    created_on = Column(DateTime, server_default=func.now())

    loans = relationship("Loan", back_populates="book", passive_deletes=True)
