"""FHIR Resource repository.

Single entry point for per-user FHIR resource persistence. Every operation
opens its own session from the injected session factory, so independent
writes (ingestion fan-out) may run concurrently. Database failures surface
as PersistenceError; a write is never silently dropped.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import NotFoundError, PersistenceError, ValidationError
from app.models.fhir import FhirResource
from app.schemas.fhir import Resource, requires_subject, subject_reference, to_fhir_dict
from app.utils.fhir_helpers import (
    extract_observation_value,
    get_path,
    parse_fhir_datetime,
    resource_date,
    utc_now,
)

logger = logging.getLogger(__name__)

# Query limits
DEFAULT_LIMIT = 100
MAX_LIMIT = 1000

COMPARISON_OPS = ("eq", "ne", "gt", "ge", "lt", "le")

# FHIR search prefix, only when followed by something number- or date-like
_PREFIX_RE = re.compile(r"^(eq|ne|gt|ge|lt|le)(?=[\d.-])")


@dataclass(frozen=True)
class Comparison:
    """One predicate term: ``<field> <op> <value>``."""

    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in COMPARISON_OPS:
            raise ValidationError(f"Unsupported comparison operator: {self.op}")

    @classmethod
    def parse(cls, raw: Any) -> Comparison:
        """Build a comparison from a plain value or a FHIR-prefixed string.

        ``"ge2024-01-01"`` -> ``Comparison("ge", "2024-01-01")``; anything
        without a recognised prefix is an equality test.
        """
        if isinstance(raw, Comparison):
            return raw
        if isinstance(raw, str):
            match = _PREFIX_RE.match(raw)
            if match:
                return cls(match.group(1), raw[match.end():])
        return cls("eq", raw)

    def matches(self, actual: Any) -> bool:
        if actual is None:
            return self.op == "ne"
        left, right = _comparable(actual, self.value)
        if self.op == "eq":
            return left == right
        if self.op == "ne":
            return left != right
        try:
            if self.op == "gt":
                return left > right
            if self.op == "ge":
                return left >= right
            if self.op == "lt":
                return left < right
            return left <= right
        except TypeError:
            return False


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _looks_like_date(value: Any) -> bool:
    return isinstance(value, str) and bool(re.match(r"^\d{4}-\d{2}(-\d{2})?", value))


def _comparable(actual: Any, expected: Any) -> tuple[Any, Any]:
    """Coerce a stored value and a query value to a common comparable type."""
    left_num, right_num = _as_number(actual), _as_number(expected)
    if left_num is not None and right_num is not None:
        return left_num, right_num
    if _looks_like_date(actual) and _looks_like_date(expected):
        left_dt, right_dt = parse_fhir_datetime(actual), parse_fhir_datetime(expected)
        if left_dt is not None and right_dt is not None:
            return left_dt, right_dt
    if isinstance(actual, bool) or isinstance(expected, bool):
        return str(actual).lower(), str(expected).lower()
    return str(actual), str(expected)


def _matches_predicate(resource: dict[str, Any], predicate: dict[str, Any]) -> bool:
    for path, expected in predicate.items():
        actual = get_path(resource, path)
        if isinstance(expected, (list, tuple, set)):
            # Comma-joined FHIR values: any may match
            if not any(Comparison.parse(v).matches(actual) for v in expected):
                return False
        elif not Comparison.parse(expected).matches(actual):
            return False
    return True


def _sort_resources(resources: list[dict[str, Any]], sort: str) -> list[dict[str, Any]]:
    """Sort by ``field``, ``-field`` (descending), or comma-separated keys.

    Missing values sort last regardless of direction.
    """
    keys = [k.strip() for k in sort.split(",") if k.strip()]
    ordered = list(resources)
    for key in reversed(keys):
        descending = key.startswith("-")
        path = key.lstrip("-")
        present = [r for r in ordered if get_path(r, path) is not None]
        missing = [r for r in ordered if get_path(r, path) is None]

        def sort_key(resource: dict[str, Any], path: str = path) -> Any:
            value = get_path(resource, path)
            number = _as_number(value)
            if number is not None:
                return (0, number, "")
            parsed = parse_fhir_datetime(value) if _looks_like_date(value) else None
            if parsed is not None:
                return (1, parsed.timestamp(), "")
            return (2, 0.0, str(value))

        present.sort(key=sort_key, reverse=descending)
        ordered = present + missing
    return ordered


def _next_version(data: dict[str, Any]) -> str:
    """Increment a string-encoded versionId; an absent version counts as "1"."""
    current = (data.get("meta") or {}).get("versionId") or "1"
    try:
        return str(int(current) + 1)
    except (TypeError, ValueError):
        return "2"


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes; everything is stored in UTC
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class FhirRepository:
    """Repository for per-user FHIR resource persistence.

    Resources are plain FHIR dicts keyed by ``(resourceType, id)`` within a
    user's collection. ``create`` stamps ``meta.lastUpdated`` and
    ``meta.versionId``; ``update`` is a full overwrite that bumps the version.
    Ids deleted through this repository are never handed out again: a
    create that names one is stored under a fresh UUID instead.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize repository with a session factory.

        Args:
            session_factory: Factory producing async SQLAlchemy sessions.
            clock: Source of write timestamps (overridable in tests).
        """
        self._session_factory = session_factory
        self._clock = clock
        # (user_id, resource_type, fhir_id) of every deleted resource
        self._tombstones: set[tuple[str, str, str]] = set()
        bind = session_factory.kw.get("bind")
        dialect = getattr(getattr(bind, "dialect", None), "name", "")
        # SQLite allows a single writer; serialize writes within the process
        self._write_lock = asyncio.Lock() if dialect == "sqlite" else None

    @asynccontextmanager
    async def _session(self, write: bool = False) -> AsyncIterator[AsyncSession]:
        lock = self._write_lock if write else None
        try:
            if lock is not None:
                await lock.acquire()
            try:
                async with self._session_factory() as session:
                    yield session
                    if write:
                        await session.commit()
            finally:
                if lock is not None:
                    lock.release()
        except SQLAlchemyError as e:
            logger.error(f"Resource store failure: {e}")
            raise PersistenceError(f"Resource store unavailable: {e}") from e

    @staticmethod
    async def _get_row(
        session: AsyncSession, user_id: str, resource_type: str, resource_id: str
    ) -> FhirResource | None:
        result = await session.execute(
            select(FhirResource).where(
                FhirResource.user_id == user_id,
                FhirResource.resource_type == resource_type,
                FhirResource.fhir_id == resource_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _prepare(resource: Resource | dict[str, Any]) -> tuple[dict[str, Any], str, str | None]:
        data = copy.deepcopy(to_fhir_dict(resource))
        resource_type = data.get("resourceType")
        if not resource_type:
            raise ValidationError("resourceType required")
        subject = subject_reference(data)
        if requires_subject(resource_type) and not subject:
            raise ValidationError(f"{resource_type} requires a subject/patient reference")
        return data, resource_type, subject

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, user_id: str, resource: Resource | dict[str, Any]) -> str:
        """Persist a new resource and return its id.

        Assigns a UUID when the resource has no id, or when the id belongs to
        a deleted resource. Creating with an id that already exists
        overwrites that resource and increments its version.

        Args:
            user_id: Owner of the collection.
            resource: Resource model or FHIR dict.

        Returns:
            The resource id.

        Raises:
            ValidationError: If resourceType or the patient link is missing.
            PersistenceError: If the store is unavailable.
        """
        data, resource_type, subject = self._prepare(resource)
        fhir_id = str(data.get("id") or uuid.uuid4())
        if (user_id, resource_type, fhir_id) in self._tombstones:
            replacement = str(uuid.uuid4())
            logger.info(f"{resource_type}/{fhir_id} was deleted; storing as {resource_type}/{replacement}")
            fhir_id = replacement
        data["id"] = fhir_id
        now = self._clock()
        meta = data.setdefault("meta", {})
        meta["lastUpdated"] = now.isoformat()

        async with self._session(write=True) as session:
            existing = await self._get_row(session, user_id, resource_type, fhir_id)
            if existing is None:
                meta["versionId"] = "1"
                session.add(
                    FhirResource(
                        user_id=user_id,
                        resource_type=resource_type,
                        fhir_id=fhir_id,
                        subject_reference=subject,
                        data=data,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                self._check_subject(existing, subject)
                meta["versionId"] = _next_version(existing.data)
                existing.data = data
                existing.updated_at = now

        logger.debug(f"Stored {resource_type}/{fhir_id} for user {user_id}")
        return fhir_id

    async def update(self, user_id: str, resource: Resource | dict[str, Any]) -> dict[str, Any]:
        """Overwrite an existing resource and increment its versionId.

        Raises:
            ValidationError: If the resource has no id or changes its subject.
            NotFoundError: If no resource with that id exists.
            PersistenceError: If the store is unavailable.
        """
        data, resource_type, subject = self._prepare(resource)
        fhir_id = data.get("id")
        if not fhir_id:
            raise ValidationError("update requires a resource id")
        now = self._clock()

        async with self._session(write=True) as session:
            existing = await self._get_row(session, user_id, resource_type, str(fhir_id))
            if existing is None:
                raise NotFoundError(resource_type, str(fhir_id))
            self._check_subject(existing, subject)
            meta = data.setdefault("meta", {})
            meta["lastUpdated"] = now.isoformat()
            meta["versionId"] = _next_version(existing.data)
            existing.data = data
            existing.updated_at = now

        return copy.deepcopy(data)

    @staticmethod
    def _check_subject(existing: FhirResource, subject: str | None) -> None:
        if existing.subject_reference and subject != existing.subject_reference:
            raise ValidationError(
                f"{existing.document_key} subject is fixed at {existing.subject_reference}"
            )

    async def delete(self, user_id: str, resource_type: str, resource_id: str) -> bool:
        """Delete a resource; deleting a missing resource is not an error.

        The id is retired: a later create naming it gets a fresh id.

        Returns:
            True if a resource was deleted, False if it did not exist.
        """
        async with self._session(write=True) as session:
            result = await session.execute(
                delete(FhirResource).where(
                    FhirResource.user_id == user_id,
                    FhirResource.resource_type == resource_type,
                    FhirResource.fhir_id == resource_id,
                )
            )
        deleted = (result.rowcount or 0) > 0
        if deleted:
            self._tombstones.add((user_id, resource_type, resource_id))
        return deleted

    async def delete_all(self, user_id: str, resource_type: str | None = None) -> int:
        """Delete a user's resources, optionally of one type. Returns the count."""
        keys = select(FhirResource.resource_type, FhirResource.fhir_id).where(FhirResource.user_id == user_id)
        stmt = delete(FhirResource).where(FhirResource.user_id == user_id)
        if resource_type:
            keys = keys.where(FhirResource.resource_type == resource_type)
            stmt = stmt.where(FhirResource.resource_type == resource_type)
        async with self._session(write=True) as session:
            doomed = (await session.execute(keys)).all()
            await session.execute(stmt)
        self._tombstones.update((user_id, rtype, fhir_id) for rtype, fhir_id in doomed)
        logger.info(f"Deleted {len(doomed)} resources for user {user_id}")
        return len(doomed)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, user_id: str, resource_type: str, resource_id: str) -> dict[str, Any] | None:
        """Get one resource by type and id, or None."""
        async with self._session() as session:
            row = await self._get_row(session, user_id, resource_type, resource_id)
            return copy.deepcopy(row.data) if row else None

    async def query(
        self,
        user_id: str,
        resource_type: str,
        predicate: dict[str, Any] | None = None,
        sort: str | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[dict[str, Any]]:
        """Query resources of one type.

        Args:
            user_id: Owner of the collection.
            resource_type: Declared resource type (always filtered on).
            predicate: Field path -> value, FHIR-prefixed string ("ge5.0"),
                Comparison, or list of alternatives. Paths are top-level or
                dotted one level deep ("subject.reference").
            sort: Field path, "-field" for descending, comma-separated keys.
            limit: Maximum results (default 100, clamped to 1000).

        Returns:
            Matching FHIR dicts.

        Raises:
            ValidationError: If limit is below 1.
        """
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        if limit > MAX_LIMIT:
            logger.debug(f"Clamping query limit {limit} to {MAX_LIMIT}")
            limit = MAX_LIMIT

        predicate = dict(predicate or {})
        stmt = select(FhirResource.data).where(
            FhirResource.user_id == user_id,
            FhirResource.resource_type == resource_type,
        )
        id_term = predicate.get("id")
        if id_term is not None and not isinstance(id_term, (list, tuple, set)):
            comparison = Comparison.parse(id_term)
            if comparison.op == "eq":
                stmt = stmt.where(FhirResource.fhir_id == str(comparison.value))
                predicate.pop("id")

        async with self._session() as session:
            result = await session.execute(stmt.order_by(FhirResource.created_at))
            rows = [copy.deepcopy(data) for data in result.scalars().all()]

        matches = [r for r in rows if _matches_predicate(r, predicate)] if predicate else rows
        if sort:
            matches = _sort_resources(matches, sort)
        return matches[:limit]

    async def search_bundle(
        self,
        user_id: str,
        resource_type: str,
        predicate: dict[str, Any] | None = None,
        sort: str | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> dict[str, Any]:
        """Query wrapped in a FHIR ``searchset`` Bundle."""
        resources = await self.query(user_id, resource_type, predicate, sort, limit)
        return {
            "resourceType": "Bundle",
            "type": "searchset",
            "total": len(resources),
            "entry": [
                {"fullUrl": f"{resource_type}/{r.get('id')}", "resource": r} for r in resources
            ],
        }

    async def list_all(
        self, user_id: str, resource_types: Iterable[str] | None = None
    ) -> list[dict[str, Any]]:
        """All of a user's resources, optionally restricted to some types."""
        stmt = select(FhirResource.data).where(FhirResource.user_id == user_id)
        if resource_types is not None:
            stmt = stmt.where(FhirResource.resource_type.in_(list(resource_types)))
        async with self._session() as session:
            result = await session.execute(stmt.order_by(FhirResource.created_at))
            return [copy.deepcopy(data) for data in result.scalars().all()]

    async def count(self, user_id: str, resource_types: Iterable[str] | None = None) -> int:
        """Number of resources in a user's collection."""
        stmt = select(func.count()).select_from(FhirResource).where(FhirResource.user_id == user_id)
        if resource_types is not None:
            stmt = stmt.where(FhirResource.resource_type.in_(list(resource_types)))
        async with self._session() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def last_write_time(self, user_id: str) -> datetime | None:
        """Timestamp of the most recent write to a user's collection."""
        stmt = select(func.max(FhirResource.updated_at)).where(FhirResource.user_id == user_id)
        async with self._session() as session:
            return _as_utc((await session.execute(stmt)).scalar_one_or_none())

    async def observation_timeline(
        self, user_id: str, code: str, patient_id: str | None = None
    ) -> list[dict[str, Any]]:
        """Numeric history of one observation code, oldest first.

        Returns:
            List of ``{"id", "date", "value", "unit"}`` points.
        """
        predicate: dict[str, Any] = {}
        if patient_id:
            predicate["subject.reference"] = f"Patient/{patient_id}"
        observations = await self.query(user_id, "Observation", predicate, limit=MAX_LIMIT)
        points = []
        for obs in observations:
            codings = (obs.get("code") or {}).get("coding") or []
            if not any(c.get("code") == code for c in codings):
                continue
            value, unit = extract_observation_value(obs)
            if _as_number(value) is None:
                continue
            points.append(
                {"id": obs.get("id"), "date": resource_date(obs), "value": float(value), "unit": unit}
            )
        return _sort_resources(points, "date")
