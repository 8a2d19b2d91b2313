"""
DB-backed subscription store and run ledger using async SQLAlchemy.

Key methods:
- create(criteria, contact): INSERT with a freshly generated, collision-checked access key
- update(changes, id/access_key): partial UPDATE of the provided fields only, clears the last-run pointer
- get(id/access_key): SELECT one subscription
- list_due(ttl_seconds, limit): enabled+verified subscriptions whose last run is missing or stale,
  joined with that run, least recently checked first
- create_run(run): INSERT a run and move the owner's last_run_id in the same transaction
- prune_runs(): DELETE runs past retention (best effort, never raises)
- get_run / list_runs: read back run history

Every method opens its own AsyncSession, so concurrent worker tasks never share one.
"""
from datetime import timedelta
import logging
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config.settings import settings
from core.db import Base, build_engine, build_session_maker, utcnow
from core.errors import PersistenceError, ValidationError
from models.db_models import Run as DBRun, Subscription as DBSubscription
from models.schemas import (
    ActiveSubscription,
    Run,
    RunCreate,
    Subscription,
    SubscriptionCriteria,
    SubscriptionUpdate,
)
from tools.access_key import generate_access_key

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("institution_key", "course_key", "term_key", "contact")


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class SubscriptionStore:
    """Owns all persisted state. Call open() before use and close() on shutdown."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        echo: Optional[bool] = None,
        run_retention_sec: Optional[int] = None,
        access_key_length: Optional[int] = None,
        max_key_attempts: int = 20,
    ):
        self.database_url = database_url or settings.DATABASE_URL
        self.echo = settings.DEBUG if echo is None else echo
        self.run_retention_sec = settings.RUN_RETENTION_SEC if run_retention_sec is None else run_retention_sec
        self.access_key_length = access_key_length or settings.ACCESS_KEY_LENGTH
        self.max_key_attempts = max_key_attempts
        self.engine = None
        self._session_maker = None

    # --- lifecycle ---

    @property
    def is_open(self) -> bool:
        return self._session_maker is not None

    async def open(self) -> "SubscriptionStore":
        if self.is_open:
            return self
        self.engine = build_engine(self.database_url, echo=self.echo)
        self._session_maker = build_session_maker(self.engine)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Connected to database at '%s'", self.database_url)
        return self

    async def close(self) -> None:
        if not self.is_open:
            return
        await self.engine.dispose()
        self.engine = None
        self._session_maker = None
        logger.info("Closed database connection from '%s'", self.database_url)

    def _session(self):
        if self._session_maker is None:
            raise PersistenceError("Store must be opened before use")
        return self._session_maker()

    # --- subscriptions ---

    async def create(self, criteria: SubscriptionCriteria, contact: str, enabled: bool = True) -> Subscription:
        """
        Insert a subscription with a new access key.

        The key is checked against existing rows first; if a concurrent creator still wins the
        same key the UNIQUE constraint fires and we simply try another one.
        """
        values = {
            "institution_key": criteria.institution_key,
            "course_key": criteria.course_key,
            "term_key": criteria.term_key,
            "contact": contact,
        }
        missing = [name for name in REQUIRED_FIELDS if _blank(values[name])]
        if missing:
            raise ValidationError(f"Subscription is missing the following required fields: {', '.join(missing)}")

        section_key = None if _blank(criteria.section_key) else criteria.section_key.strip()

        for attempt in range(1, self.max_key_attempts + 1):
            access_key = generate_access_key(self.access_key_length)
            async with self._session() as session:
                if await self._access_key_exists(session, access_key):
                    logger.debug("Access key collision (%s) on attempt %d, regenerating", access_key, attempt)
                    continue

                sub = DBSubscription(
                    access_key=access_key,
                    institution_key=values["institution_key"].strip(),
                    course_key=values["course_key"].strip(),
                    section_key=section_key,
                    term_key=values["term_key"].strip(),
                    contact=contact.strip(),
                    enabled=bool(enabled),
                    verified=False,
                )
                session.add(sub)
                try:
                    await session.commit()
                except IntegrityError as ie:
                    await session.rollback()
                    logger.warning("IntegrityError on create (access key %s), retrying: %s", access_key, ie)
                    continue
                except SQLAlchemyError as e:
                    await session.rollback()
                    raise PersistenceError(f"Unable to create subscription: {e}") from e

                if sub.id is None:
                    raise PersistenceError("Subscription insert did not produce a row")
                logger.info("Created subscription %s for %s/%s/%s",
                            sub.access_key, sub.institution_key, sub.term_key, sub.course_key)
                return Subscription.model_validate(sub)

        raise PersistenceError(f"Unable to find a free access key after {self.max_key_attempts} attempts")

    async def update(
        self,
        changes: SubscriptionUpdate,
        subscription_id: Optional[int] = None,
        access_key: Optional[str] = None,
    ) -> Optional[Subscription]:
        """
        Apply a partial update. The id wins over the access key when both are given.

        Any update clears last_run_id so the edge can fire again for the edited subscription;
        a changed contact also clears verified. Returns None if nothing matched.
        """
        target = self._target(subscription_id, access_key)

        values = changes.changes()
        for name in REQUIRED_FIELDS:
            if name in values and _blank(values[name]):
                raise ValidationError(f"{name} cannot be empty")
        for name in ("enabled", "verified"):
            if name in values and values[name] is None:
                raise ValidationError(f"{name} cannot be null")
        for name in ("institution_key", "course_key", "term_key", "contact"):
            if name in values:
                values[name] = values[name].strip()
        if "section_key" in values:
            values["section_key"] = None if _blank(values["section_key"]) else values["section_key"].strip()

        async with self._session() as session:
            try:
                async with session.begin():
                    current_contact = (
                        await session.execute(select(DBSubscription.contact).where(target))
                    ).scalar_one_or_none()
                    if current_contact is None:
                        return None

                    if "contact" in values and values["contact"] != current_contact:
                        values["verified"] = False
                    values["last_run_id"] = None
                    values["updated_at"] = utcnow()

                    result = await session.execute(
                        update(DBSubscription)
                        .where(target)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        return None
            except SQLAlchemyError as e:
                raise PersistenceError(f"Unable to update subscription: {e}") from e

            sub = (await session.execute(select(DBSubscription).where(target))).scalar_one_or_none()
            return Subscription.model_validate(sub) if sub else None

    async def get(self, subscription_id: Optional[int] = None, access_key: Optional[str] = None) -> Optional[Subscription]:
        target = self._target(subscription_id, access_key)
        async with self._session() as session:
            sub = (await session.execute(select(DBSubscription).where(target))).scalar_one_or_none()
            return Subscription.model_validate(sub) if sub else None

    async def list_due(self, ttl_seconds: int, limit: int = -1) -> List[ActiveSubscription]:
        """
        Subscriptions that need a fresh check.

        Equivalent to:
        SELECT s.*, r.* FROM subscriptions s LEFT JOIN runs r ON r.id = s.last_run_id
        WHERE s.enabled AND s.verified AND (r.id IS NULL OR r.timestamp < :cutoff)
        ORDER BY r.timestamp IS NOT NULL, r.timestamp, s.id [LIMIT :limit]
        """
        cutoff = utcnow() - timedelta(seconds=ttl_seconds)
        stmt = (
            select(DBSubscription, DBRun)
            .outerjoin(DBRun, DBRun.id == DBSubscription.last_run_id)
            .where(DBSubscription.enabled.is_(True))
            .where(DBSubscription.verified.is_(True))
            .where((DBRun.id.is_(None)) | (DBRun.timestamp < cutoff))
            # never-checked first, then the longest unchecked
            .order_by(DBRun.timestamp.is_not(None), DBRun.timestamp.asc(), DBSubscription.id.asc())
        )
        if limit is not None and limit >= 0:
            stmt = stmt.limit(limit)

        async with self._session() as session:
            rows = (await session.execute(stmt)).all()

        return [
            ActiveSubscription(
                subscription=Subscription.model_validate(sub),
                last_run=Run.model_validate(run) if run is not None else None,
            )
            for sub, run in rows
        ]

    # --- run ledger ---

    async def create_run(self, run: RunCreate, default_subscription_id: Optional[int] = None) -> Run:
        """
        Record a run and point its subscription at it.

        Both writes share one transaction: if the pointer cannot be moved the insert is rolled
        back as well, so no run is ever left behind with a stale pointer.
        """
        subscription_id = run.subscription_id if run.subscription_id is not None else default_subscription_id
        if subscription_id is None:
            raise ValidationError("Run must reference a subscription")
        if run.notification_sent is None:
            raise ValidationError("Run must specify notification_sent")

        async with self._session() as session:
            try:
                async with session.begin():
                    row = DBRun(
                        subscription_id=subscription_id,
                        error=run.error,
                        source_data=run.source_data,
                        notification_sent=run.notification_sent,
                        timestamp=utcnow(),
                    )
                    session.add(row)
                    await session.flush()
                    await self._move_pointer(session, subscription_id, row.id)
            except PersistenceError:
                logger.error("Rolled back run for subscription %s: pointer update failed", subscription_id)
                raise
            except SQLAlchemyError as e:
                logger.error("Rolled back run for subscription %s: %s", subscription_id, e)
                raise PersistenceError(f"Unable to record run for subscription {subscription_id}: {e}") from e

            return Run.model_validate(row)

    async def _move_pointer(self, session, subscription_id: int, run_id: int) -> None:
        result = await session.execute(
            update(DBSubscription)
            .where(DBSubscription.id == subscription_id)
            # bookkeeping write, not a user edit: keep updated_at as is
            .values(last_run_id=run_id, updated_at=DBSubscription.updated_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PersistenceError(
                f"Unable to point subscription {subscription_id} at run {run_id} ({result.rowcount} rows matched)"
            )

    async def prune_runs(self) -> None:
        """
        Delete runs older than the retention window.

        Runs still referenced as a last run are kept: they carry the edge state of their
        subscription. Errors are logged and swallowed, retention is housekeeping only.
        """
        if self.run_retention_sec is None or self.run_retention_sec <= 0:
            return
        cutoff = utcnow() - timedelta(seconds=self.run_retention_sec)
        pointed = select(DBSubscription.last_run_id).where(DBSubscription.last_run_id.is_not(None))
        try:
            async with self._session() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(DBRun)
                        .where(DBRun.timestamp < cutoff)
                        .where(DBRun.id.not_in(pointed))
                        .execution_options(synchronize_session=False)
                    )
                    pruned = result.rowcount
            if pruned:
                logger.info("Pruned %d runs older than %s", pruned, cutoff.isoformat())
        except Exception as e:
            logger.error("Encountered error while cleaning up past runs, this may affect DB limits: %s", e)

    async def get_run(self, run_id: int) -> Optional[Run]:
        async with self._session() as session:
            row = (await session.execute(select(DBRun).where(DBRun.id == run_id))).scalar_one_or_none()
            return Run.model_validate(row) if row else None

    async def list_runs(
        self,
        subscription_id: Optional[int] = None,
        access_key: Optional[str] = None,
        limit: int = -1,
    ) -> List[Run]:
        """Runs of one subscription, newest first. Unknown subscriptions give an empty list."""
        self._target(subscription_id, access_key)
        stmt = select(DBRun).order_by(DBRun.timestamp.desc(), DBRun.id.desc())
        if subscription_id is not None:
            stmt = stmt.where(DBRun.subscription_id == subscription_id)
        else:
            stmt = stmt.join(DBSubscription, DBSubscription.id == DBRun.subscription_id).where(
                DBSubscription.access_key == access_key
            )
        if limit is not None and limit >= 0:
            stmt = stmt.limit(limit)

        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Run.model_validate(r) for r in rows]

    # --- helpers ---

    @staticmethod
    def _target(subscription_id: Optional[int], access_key: Optional[str]):
        if subscription_id is not None:
            return DBSubscription.id == subscription_id
        if access_key:
            return DBSubscription.access_key == access_key
        raise ValidationError("Either a subscription id or an access key must be supplied")

    @staticmethod
    async def _access_key_exists(session, access_key: str) -> bool:
        result = await session.execute(select(DBSubscription.id).where(DBSubscription.access_key == access_key))
        return result.first() is not None
