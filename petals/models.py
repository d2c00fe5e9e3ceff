"""SQLAlchemy ORM models for reminders and calendar events."""
import datetime
from sqlalchemy import Boolean, Column, Integer, String, DateTime, Text
from .database import Base


class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    notes = Column(Text, default="")
    list_name = Column(String(128), default="Reminders", index=True)
    due_at = Column(DateTime, nullable=True, index=True)
    completed = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)


class CalendarEvent(Base):
    __tablename__ = "calendar_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    start_at = Column(DateTime, nullable=False, index=True)
    end_at = Column(DateTime, nullable=False)
    location = Column(String(255), default="")
    notes = Column(Text, default="")
    calendar_name = Column(String(128), default="Calendar")
    all_day = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
