"""
SQLAlchemy ORM models for the subscription store and run ledger.

Purpose:
- Define Subscription and Run tables
- Use SQLAlchemy async-compatible models
- Support migrations via Alembic (see alembic/versions/001_initial_schema.py)

Production notes:
- subscriptions.last_run_id is a weak pointer (no FK) so the two tables do not form a cycle;
  the store keeps it consistent inside the same transaction that inserts a run
- runs are append-only and pruned by age, index on timestamp keeps pruning cheap
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, ForeignKey, Text
from core.db import Base, utcnow


class Subscription(Base):
    """
    A standing request to be alerted when a course (or one of its sections) has open slots.

    Columns:
    - access_key: externally facing identifier, unique and never reissued
    - institution_key/course_key/term_key: identify the course to watch
    - section_key: optional section or meeting id; NULL means any section
    - contact: raw phone number or e-mail as entered by the subscriber
    - enabled: operator/user switch, disabling replaces deletion
    - verified: contact ownership confirmed by the verification reply
    - last_run_id: id of the most recent run for this subscription (nullable)
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    access_key = Column(String(64), unique=True, index=True, nullable=False)
    institution_key = Column(String(50), nullable=False)
    course_key = Column(String(50), nullable=False)
    section_key = Column(String(50), nullable=True)
    term_key = Column(String(20), nullable=False)
    contact = Column(String(255), nullable=False)
    enabled = Column(Boolean, default=True, nullable=False, index=True)
    verified = Column(Boolean, default=False, nullable=False)
    last_run_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Run(Base):
    """
    One evaluation outcome for one subscription.

    Columns:
    - subscription_id: owner, never reassigned
    - error: delivery or evaluation error recorded for audit
    - source_data: course data snapshot the decision was based on
    - notification_sent: edge state, true while the current open window has been notified
    """
    __tablename__ = "runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(
        Integer,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    error = Column(Text, nullable=True)
    source_data = Column(JSON, nullable=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    notification_sent = Column(Boolean, nullable=False)
