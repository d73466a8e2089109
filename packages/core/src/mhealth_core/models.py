"""ORM models.

Timestamps are stored as naive UTC datetimes.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from mhealth_core.db import Base


def utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    username = Column(String, unique=True, index=True)
    password_hash = Column(String)


class Profile(Base):
    __tablename__ = "profiles"
    id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    timezone = Column(String, nullable=True)  # IANA name, e.g. "Europe/Stockholm"


class Variable(Base):
    __tablename__ = "variables"
    id = Column(Integer, primary_key=True)
    label = Column(String, nullable=False)
    unit = Column(String, nullable=True)


class Routine(Base):
    __tablename__ = "routines"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    name = Column(String, nullable=False, default="Routine")
    description = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    variables = relationship("RoutineVariable", back_populates="routine", cascade="all, delete-orphan")


class RoutineVariable(Base):
    __tablename__ = "routine_variables"
    id = Column(Integer, primary_key=True)
    routine_id = Column(Integer, ForeignKey("routines.id"), index=True)
    variable_id = Column(Integer, ForeignKey("variables.id"))
    weekdays = Column(JSON, nullable=False, default=list)  # e.g. [1, 3, 5], 1 = Monday
    times = Column(JSON, nullable=False, default=list)     # e.g. [{"time": "08:00"}]
    default_value = Column(JSON, nullable=True)

    routine = relationship("Routine", back_populates="variables")
    variable = relationship("Variable")


class LogEntry(Base):
    __tablename__ = "logs"
    __table_args__ = (
        UniqueConstraint("user_id", "variable_id", "routine_id", "slot_at", name="uq_logs_routine_slot"),
    )
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    variable_id = Column(Integer, ForeignKey("variables.id"), index=True)
    routine_id = Column(Integer, ForeignKey("routines.id"), nullable=True)
    date = Column(DateTime, nullable=False, index=True)
    value = Column(String, nullable=False)
    source = Column(String, nullable=False, default="manual")  # "auto" | "manual"
    notes = Column(String, nullable=True)
    # Scheduled slot (UTC) an auto log belongs to; null for manual entries
    slot_at = Column(DateTime, nullable=True)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, index=True)
    routine_reminder_enabled = Column(Boolean, nullable=False, default=False)
    routine_reminder_minutes = Column(Integer, nullable=True, default=15)
    routine_notification_timing = Column(String, nullable=False, default="before")  # before | at_time | after


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"
    __table_args__ = (UniqueConstraint("user_id", "endpoint", name="uq_push_user_endpoint"),)
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    endpoint = Column(String, nullable=False)
    p256dh_key = Column(String, nullable=False)
    auth_key = Column(String, nullable=False)
    user_agent = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow_naive)
    last_used_at = Column(DateTime, nullable=True)


class NotificationHistory(Base):
    __tablename__ = "notification_history"
    __table_args__ = (
        UniqueConstraint("user_id", "routine_id", "slot_date", "slot_time", name="uq_notification_slot"),
    )
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    routine_id = Column(Integer, ForeignKey("routines.id"))
    slot_date = Column(String, nullable=False)  # local "YYYY-MM-DD"
    slot_time = Column(String, nullable=False)  # local "HH:MM"
    notification_type = Column(String, nullable=False, default="routine_reminder")
    title = Column(String)
    body = Column(String)
    sent_at = Column(DateTime, nullable=False, default=utcnow_naive)
    delivery_status = Column(String, nullable=False)  # pending | sent | failed
    delivery_details = Column(JSON, nullable=True)


__all__ = [
    "User",
    "Profile",
    "Variable",
    "Routine",
    "RoutineVariable",
    "LogEntry",
    "NotificationPreference",
    "PushSubscription",
    "NotificationHistory",
    "utcnow_naive",
]
