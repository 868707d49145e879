"""
VersionLedgerService -- append-only persistence of forecast versions.

Responsibility:
    Low-level write operations of the version ledger:

    1. ``claim_version``    -- insert a PENDING version row, claiming its
                               number under the (project, number) unique
                               constraint.
    2. ``add_line_items``   -- insert line items introduced by the version.
    3. ``write_entries``    -- insert one ForecastEntry per resolved line.
    4. ``mark_committed``   -- flip PENDING -> COMMITTED (visible to readers).
    5. ``discard_pending``  -- compensation: remove a pending version, its
                               entries and the line items it created.

Architecture position:
    Kernel > Services -- imperative shell.  Flush-only; the caller
    (ForecastService) owns the two transactions of a version commit and the
    compensation transaction.

Invariants enforced:
    - Version numbers are unique per project; a duplicate claim raises
      VersionConflictError.
    - Committed versions are never modified or deleted (also enforced by
      the ORM listeners in db/immutability.py).
    - Internal marker fields never reach storage.

Failure modes:
    - VersionConflictError on a duplicate version number.
    - ValidationError if a new line item payload carries marker fields.
    - ImmutabilityViolationError if asked to discard a committed version.

Audit relevance:
    Claims, commits and discards are logged with version id and number.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from forecast_kernel.domain.clock import Clock, SystemClock
from forecast_kernel.domain.dtos import LineItemInfo, NewLineItemSpec, SnapshotLine
from forecast_kernel.domain.validation import (
    new_line_item_issues,
    persistence_payload_issues,
    raise_if_issues,
)
from forecast_kernel.exceptions import ImmutabilityViolationError, VersionConflictError
from forecast_kernel.logging_config import get_logger
from forecast_kernel.models.forecast_version import (
    ForecastEntry,
    ForecastVersion,
    VersionStatus,
)
from forecast_kernel.models.line_item import LineItem
from forecast_kernel.services.base import BaseService

logger = get_logger("services.version_ledger")

_VERSION_UNIQUE_MARKERS = (
    "uq_forecast_version_project_number",
    "forecast_versions.project_id, forecast_versions.version_number",
)


def is_version_conflict(exc: IntegrityError) -> bool:
    """True when the IntegrityError comes from the version-number constraint."""
    message = str(exc.orig)
    return any(marker in message for marker in _VERSION_UNIQUE_MARKERS)


class VersionLedgerService(BaseService[ForecastVersion]):
    """
    Append-only writer for forecast versions and entries.

    Contract:
        Every method flushes; none commits.

    Guarantees:
        - A version is created PENDING and becomes COMMITTED only through
          ``mark_committed``.
        - ``discard_pending`` removes nothing from a committed version.

    Non-goals:
        - Does NOT decide values (see forecast_engines.snapshot).
        - Does NOT retry.
    """

    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def claim_version(
        self,
        project_id: UUID,
        version_number: int,
        reason: str,
        actor: str,
    ) -> ForecastVersion:
        """
        Insert a pending version row holding ``version_number``.

        Raises:
            VersionConflictError: If the number is already taken.
        """
        version = ForecastVersion(
            project_id=project_id,
            version_number=version_number,
            reason=reason.strip(),
            status=VersionStatus.PENDING.value,
            created_at=self._clock.now(),
            created_by=actor,
        )
        self.session.add(version)
        try:
            self.session.flush()
        except IntegrityError as exc:
            if is_version_conflict(exc):
                logger.warning(
                    "version_number_conflict",
                    extra={"project_id": str(project_id), "version_number": version_number},
                )
                raise VersionConflictError(str(project_id), version_number) from exc
            raise

        logger.info(
            "version_claimed",
            extra={
                "project_id": str(project_id),
                "version_id": str(version.id),
                "version_number": version_number,
            },
        )
        return version

    def add_line_items(
        self,
        project_id: UUID,
        version_id: UUID,
        specs: Iterable[NewLineItemSpec],
        actor: str,
    ) -> list[LineItemInfo]:
        """
        Insert line items introduced by a version; budget_cost = staged value.

        Raises:
            ValidationError: If a new item fails the classification and value
                checks or carries internal markers.
        """
        rows = []
        for index, spec in enumerate(specs):
            raise_if_issues(
                new_line_item_issues(spec.classification, spec.value, ref=f"new[{index}]")
            )
            payload = {
                "project_id": project_id,
                "business_line": spec.classification.business_line,
                "cost_line": spec.classification.cost_line,
                "spend_type": spec.classification.spend_type,
                "sub_category": spec.classification.sub_category,
                "budget_cost": spec.value,
                "created_in_version_id": version_id,
                "created_by": actor,
            }
            raise_if_issues(persistence_payload_issues(payload))
            rows.append(LineItem(**payload))

        self.session.add_all(rows)
        self.session.flush()
        if rows:
            logger.info(
                "version_line_items_added",
                extra={"version_id": str(version_id), "count": len(rows)},
            )
        return [row.to_dto() for row in rows]

    def write_entries(
        self,
        version: ForecastVersion,
        lines: Sequence[SnapshotLine],
        actor: str,
    ) -> int:
        entries = [
            ForecastEntry(
                version_id=version.id,
                line_item_id=line.line_item_id,
                forecasted_cost=line.value,
                is_excluded=line.excluded,
                created_by=actor,
            )
            for line in lines
        ]
        self.session.add_all(entries)
        self.session.flush()
        return len(entries)

    def mark_committed(self, version: ForecastVersion, actor: str) -> None:
        version.status = VersionStatus.COMMITTED.value
        version.updated_by = actor
        self.session.flush()
        logger.info(
            "version_committed",
            extra={
                "project_id": str(version.project_id),
                "version_id": str(version.id),
                "version_number": version.version_number,
            },
        )

    def discard_pending(self, version_id: UUID) -> bool:
        """
        Remove a pending version together with its entries and line items.

        Returns False when the version no longer exists.

        Raises:
            ImmutabilityViolationError: If the version is committed.
        """
        version = self.session.get(ForecastVersion, version_id)
        if version is None:
            return False
        if version.is_committed:
            raise ImmutabilityViolationError(
                entity_type="ForecastVersion",
                entity_id=str(version_id),
                reason="Committed forecast versions cannot be discarded",
            )

        # Separate flushes: line items may only go once no entry references them.
        for entry in list(
            self.session.scalars(select(ForecastEntry).where(ForecastEntry.version_id == version_id))
        ):
            self.session.delete(entry)
        self.session.flush()

        for item in list(
            self.session.scalars(select(LineItem).where(LineItem.created_in_version_id == version_id))
        ):
            self.session.delete(item)
        self.session.flush()

        self.session.delete(version)
        self.session.flush()
        logger.warning(
            "pending_version_discarded",
            extra={
                "project_id": str(version.project_id),
                "version_id": str(version_id),
                "version_number": version.version_number,
            },
        )
        return True

    def stale_pending_ids(self, project_id: UUID, older_than: datetime) -> list[UUID]:
        """Pending versions created before ``older_than``."""
        rows = self.session.execute(
            select(ForecastVersion.id, ForecastVersion.created_at).where(
                ForecastVersion.project_id == project_id,
                ForecastVersion.status == VersionStatus.PENDING.value,
            )
        ).all()
        stale = []
        for version_id, created_at in rows:
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
            if created_at < older_than:
                stale.append(version_id)
        return stale
