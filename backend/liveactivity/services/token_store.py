"""Token store - durable registry of Live Activity push tokens.

Every token is identified by a ``TokenKey`` made of the device id, the token
kind and (for activity tokens only) the activity id. Registering the same key
again overwrites the stored token instead of adding a row.

Writes for one key are serialized with an asyncio lock so that an invalid
token removal coming from a fan-out cannot interleave with a re-registration
from the same device. Across processes the database unique constraint is the
last line; an insert that loses that race is retried as an update.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from ..errors import StoreUnavailable, ValidationError
from ..models.push_token import PushToken
from ..utils.db_utils import retry_on_lock

logger = logging.getLogger(__name__)

GRADE_RANGE = (1, 3)
CLASS_NUMBER_RANGE = (1, 11)
RECENT_REGISTRATIONS_LIMIT = 10


class TokenKind(str, Enum):
    """Which lifecycle phase a token is used for."""
    PUSH_TO_START = "push_to_start"
    ACTIVITY_TOKEN = "activity_token"
    APNS_TOKEN = "apns_token"


@dataclass(frozen=True)
class TokenKey:
    """Identity of a stored token."""
    device_id: str
    kind: TokenKind
    activity_id: Optional[str] = None

    def __post_init__(self):
        # Only activity tokens are scoped to an activity
        if self.kind != TokenKind.ACTIVITY_TOKEN and self.activity_id is not None:
            object.__setattr__(self, "activity_id", None)

    @property
    def activity_key(self) -> str:
        return self.activity_id or ""


@dataclass
class NewToken:
    """A token registration request."""
    kind: TokenKind
    token: str
    device_id: str
    bundle_id: Optional[str] = None
    activity_id: Optional[str] = None
    grade: Optional[int] = None
    class_number: Optional[int] = None
    client_timestamp: Optional[int] = None

    @property
    def key(self) -> TokenKey:
        return TokenKey(self.device_id, TokenKind(self.kind), self.activity_id)


@dataclass(frozen=True)
class TokenRecord:
    """Read-only snapshot of a stored token."""
    id: int
    kind: TokenKind
    token: str
    device_id: str
    activity_id: Optional[str]
    bundle_id: Optional[str]
    grade: Optional[int]
    class_number: Optional[int]
    client_timestamp: Optional[int]
    registered_at: Optional[datetime]

    @property
    def key(self) -> TokenKey:
        return TokenKey(self.device_id, self.kind, self.activity_id)

    @classmethod
    def from_model(cls, row: PushToken) -> "TokenRecord":
        return cls(
            id=row.id,
            kind=TokenKind(row.kind),
            token=row.token,
            device_id=row.device_id,
            activity_id=row.activity_key or None,
            bundle_id=row.bundle_id,
            grade=row.grade,
            class_number=row.class_number,
            client_timestamp=row.client_timestamp,
            registered_at=row.registered_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.kind.value,
            "token": self.token,
            "deviceId": self.device_id,
            "activityId": self.activity_id,
            "bundleId": self.bundle_id,
            "grade": self.grade,
            "classNumber": self.class_number,
            "registeredAt": self.registered_at.isoformat() if self.registered_at else None,
        }


def validate_new_token(new: NewToken) -> None:
    """Raise ValidationError listing every invalid field."""
    details = []

    try:
        kind = TokenKind(new.kind)
    except ValueError:
        kind = None
        details.append({"field": "type", "message": f"unknown token type: {new.kind}", "type": "enum"})

    if not (new.token or "").strip():
        details.append({"field": "token", "message": "token is required", "type": "missing"})
    if not (new.device_id or "").strip():
        details.append({"field": "deviceId", "message": "deviceId is required", "type": "missing"})
    if kind == TokenKind.ACTIVITY_TOKEN and not (new.activity_id or "").strip():
        details.append({
            "field": "activityId",
            "message": "activityId is required for activity_token",
            "type": "missing",
        })
    if new.grade is not None and not GRADE_RANGE[0] <= new.grade <= GRADE_RANGE[1]:
        details.append({
            "field": "grade",
            "message": f"grade must be between {GRADE_RANGE[0]} and {GRADE_RANGE[1]}",
            "type": "range",
        })
    if new.class_number is not None and not CLASS_NUMBER_RANGE[0] <= new.class_number <= CLASS_NUMBER_RANGE[1]:
        details.append({
            "field": "classNumber",
            "message": f"classNumber must be between {CLASS_NUMBER_RANGE[0]} and {CLASS_NUMBER_RANGE[1]}",
            "type": "range",
        })

    if details:
        raise ValidationError("Invalid token registration", details)


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class TokenStore:
    """Durable token registry backed by the SQLAlchemy async engine."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        if session_factory is None or engine is None:
            from .. import database
            session_factory = session_factory or database.async_session
            engine = engine or database.engine
        self._session_factory = session_factory
        self._engine = engine
        self._locks: Dict[TokenKey, _KeyLock] = {}

    @asynccontextmanager
    async def _lock_for(self, key: TokenKey):
        """Hold the write lock of one key.

        The entry is dropped once no task holds or waits on it, so the map
        only covers keys with writes in flight.
        """
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    async def init(self):
        """Create tables if they do not exist yet."""
        from ..database import init_db
        try:
            await init_db(self._engine)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Cannot initialize token store: {e}") from e

    async def close(self):
        await self._engine.dispose()

    async def register(self, new: NewToken) -> TokenRecord:
        """Insert or overwrite the token stored under ``new.key``.

        Raises:
            ValidationError: Required fields missing or out of range
            StoreUnavailable: Database error
        """
        validate_new_token(new)
        key = new.key

        async with self._lock_for(key):
            try:
                try:
                    record = await self._upsert(key, new)
                except IntegrityError:
                    # Another writer inserted the same key first
                    logger.debug(f"Concurrent insert for {key}, retrying as update")
                    record = await self._upsert(key, new)
            except SQLAlchemyError as e:
                raise StoreUnavailable(f"Cannot register token: {e}") from e

        logger.info(
            f"Token registered: kind={key.kind.value} device={key.device_id} "
            f"activity={key.activity_id} token={new.token[:16]}..."
        )
        return record

    async def _upsert(self, key: TokenKey, new: NewToken) -> TokenRecord:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PushToken).where(
                    PushToken.device_id == key.device_id,
                    PushToken.kind == key.kind.value,
                    PushToken.activity_key == key.activity_key,
                )
            )
            row = result.scalar_one_or_none()
            now = datetime.utcnow()

            if row is None:
                row = PushToken(
                    device_id=key.device_id,
                    kind=key.kind.value,
                    activity_key=key.activity_key,
                )
                session.add(row)

            row.token = new.token
            row.bundle_id = new.bundle_id
            row.grade = new.grade
            row.class_number = new.class_number
            row.client_timestamp = new.client_timestamp
            row.registered_at = now

            await retry_on_lock(session.commit)
            await session.refresh(row)
            return TokenRecord.from_model(row)

    async def list_by_kind(self, kind: TokenKind) -> List[TokenRecord]:
        """Snapshot of every token of one kind."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(PushToken)
                    .where(PushToken.kind == TokenKind(kind).value)
                    .order_by(PushToken.id)
                )
                return [TokenRecord.from_model(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Cannot list tokens: {e}") from e

    async def list_all(self) -> Dict[str, List[TokenRecord]]:
        """All tokens grouped by kind value."""
        grouped: Dict[str, List[TokenRecord]] = {kind.value: [] for kind in TokenKind}
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(PushToken).order_by(PushToken.id))
                for row in result.scalars().all():
                    grouped.setdefault(row.kind, []).append(TokenRecord.from_model(row))
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Cannot list tokens: {e}") from e
        return grouped

    async def remove(
        self,
        device_id: str,
        kind: TokenKind,
        activity_id: Optional[str] = None,
        expected_token: Optional[str] = None,
    ) -> bool:
        """Delete one token. Missing tokens are not an error.

        With ``expected_token`` the row is only deleted while it still holds
        that token value, so a token re-registered in the meantime survives.

        Returns:
            True if a row was deleted
        """
        key = TokenKey(device_id, TokenKind(kind), activity_id)
        async with self._lock_for(key):
            try:
                async with self._session_factory() as session:
                    statement = delete(PushToken).where(
                        PushToken.device_id == key.device_id,
                        PushToken.kind == key.kind.value,
                        PushToken.activity_key == key.activity_key,
                    )
                    if expected_token is not None:
                        statement = statement.where(PushToken.token == expected_token)
                    result = await session.execute(statement)
                    await retry_on_lock(session.commit)
                    removed = (result.rowcount or 0) > 0
            except SQLAlchemyError as e:
                raise StoreUnavailable(f"Cannot remove token: {e}") from e

        if removed:
            logger.info(f"Token removed: kind={key.kind.value} device={device_id} activity={key.activity_id}")
        return removed

    async def remove_device(self, device_id: str) -> int:
        """Delete every token registered by a device.

        Returns:
            Number of tokens deleted
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(PushToken).where(PushToken.device_id == device_id)
                )
                keys = [TokenRecord.from_model(row).key for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Cannot list device tokens: {e}") from e

        removed = 0
        for key in keys:
            if await self.remove(key.device_id, key.kind, key.activity_id):
                removed += 1

        if removed:
            logger.info(f"Removed {removed} tokens for device {device_id}")
        return removed

    async def stats(self) -> dict:
        """Counts per kind plus the most recent registrations."""
        try:
            async with self._session_factory() as session:
                counts_result = await session.execute(
                    select(PushToken.kind, func.count(PushToken.id)).group_by(PushToken.kind)
                )
                counts = {kind.value: 0 for kind in TokenKind}
                for kind, count in counts_result.all():
                    counts[kind] = count

                recent_result = await session.execute(
                    select(PushToken)
                    .order_by(PushToken.registered_at.desc(), PushToken.id.desc())
                    .limit(RECENT_REGISTRATIONS_LIMIT)
                )
                recent = [TokenRecord.from_model(row) for row in recent_result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Cannot compute token stats: {e}") from e

        last_registered_at = recent[0].registered_at if recent else None
        return {
            "countsByKind": counts,
            "total": sum(counts.values()),
            "lastRegisteredAt": last_registered_at.isoformat() if last_registered_at else None,
            "recentRegistrations": [
                {
                    "type": record.kind.value,
                    "deviceId": record.device_id,
                    "grade": record.grade,
                    "classNumber": record.class_number,
                    "registeredAt": record.registered_at.isoformat() if record.registered_at else None,
                }
                for record in recent
            ],
        }
