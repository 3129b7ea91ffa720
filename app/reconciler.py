"""
Reconciliation of stored bundles against the catalog's current revisions
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from constants import RECONCILE_ON_DEMAND_TIMEOUT
from bundles import normalize_title_id
from exceptions import VaultException, CatalogServiceException
from metrics import ACTIVE_RECONCILIATIONS, reconciled_titles_total, drifted_depots_total
from utils import now_utc, run_with_budget

logger = logging.getLogger("main")


@dataclass
class DepotChange:
    depot_id: str
    previous: str
    current: str

    def to_dict(self):
        return {"depot_id": self.depot_id, "previous": self.previous, "current": self.current}


@dataclass
class ReconciliationResult:
    title_id: str
    changes: List[DepotChange] = field(default_factory=list)
    committed: bool = False
    created: Optional[bool] = None
    skipped: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.error:
            return "failed"
        return "updated" if self.committed else "unchanged"

    def to_dict(self):
        return {
            "title_id": self.title_id,
            "status": self.status,
            "changes": [c.to_dict() for c in self.changes],
            "committed": self.committed,
            "created": self.created,
            "skipped": list(self.skipped),
            "error": self.error,
        }


@dataclass
class PassSummary:
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[ReconciliationResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def checked(self) -> int:
        return len(self.results)

    @property
    def updated(self) -> int:
        return sum(1 for r in self.results if r.committed)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.error)

    def to_dict(self):
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "checked": self.checked,
            "updated": self.updated,
            "failed": self.failed,
            "error": self.error,
            "results": [r.to_dict() for r in self.results if r.committed or r.error],
        }


class Reconciler:
    def __init__(self, store_client, catalog, assembler, on_demand_timeout: float = RECONCILE_ON_DEMAND_TIMEOUT):
        self.store_client = store_client
        self.catalog = catalog
        self.assembler = assembler
        self.on_demand_timeout = on_demand_timeout
        self.last_summary: Optional[PassSummary] = None

    @staticmethod
    def _drift(unit, latest_revisions: Dict[str, str]) -> List[DepotChange]:
        """Stored depots whose catalog revision differs, plus unverified ones the catalog knows"""
        changes = []
        for depot_id, stored in sorted(unit.revisions.items()):
            latest = latest_revisions.get(depot_id)
            if not latest:
                continue
            if latest != stored or depot_id in unit.unverified:
                changes.append(DepotChange(depot_id, stored, latest))
        return changes

    def check_title(self, title_id) -> List[DepotChange]:
        title_id = normalize_title_id(title_id)
        unit = self.store_client.read_stored_unit(title_id)
        if unit is None:
            return []
        metadata = self.catalog.get_title_metadata(title_id)
        return self._drift(unit, metadata.current_revisions)

    def _fetch_manifest(self, depot_id: str, revision_id: str) -> Optional[bytes]:
        try:
            return self.catalog.fetch_manifest(depot_id, revision_id)
        except CatalogServiceException as e:
            logger.warning(f"Could not fetch manifest {depot_id}_{revision_id}: {e.message}")
            return None

    def reconcile_title(self, title_id) -> ReconciliationResult:
        title_id = normalize_title_id(title_id)
        result = ReconciliationResult(title_id=title_id)

        with self.store_client.locks.hold(title_id):
            try:
                unit = self.store_client.read_stored_unit(title_id)
                if unit is None:
                    result.error = f"Title {title_id} is not in the store"
                    reconciled_titles_total.labels(status="failed").inc()
                    return result

                metadata = self.catalog.get_title_metadata(title_id)
                drift = self._drift(unit, metadata.current_revisions)
                if not drift:
                    logger.debug(f"{title_id} is up to date")
                    reconciled_titles_total.labels(status="unchanged").inc()
                    return result

                logger.info(f"{title_id} ({metadata.name}) has {len(drift)} drifted depots")
                drifted_depots_total.inc(len(drift))

                bundle = self.assembler.assemble_from_revisions(
                    title_id,
                    metadata.name,
                    unit.files,
                    {change.depot_id: change.current for change in drift},
                    self._fetch_manifest,
                )

                for change in drift:
                    manifest = bundle.manifest_for(change.depot_id)
                    if manifest and manifest.revision_id == change.current and not manifest.revision_synthesized:
                        result.changes.append(change)
                    else:
                        result.skipped.append(change.depot_id)

                if not result.changes:
                    logger.warning(f"No drifted manifest of {title_id} could be fetched, keeping the stored bundle")
                    reconciled_titles_total.labels(status="unchanged").inc()
                    return result

                commit = self.store_client.commit(title_id, bundle)
                result.committed = True
                result.created = commit.created
                reconciled_titles_total.labels(status="updated").inc()
                for change in result.changes:
                    logger.info(f"Updated {title_id} depot {change.depot_id}: {change.previous} -> {change.current}")
            except VaultException as e:
                logger.error(f"Reconciliation of {title_id} failed: {e.message}")
                result.error = e.message
                reconciled_titles_total.labels(status="failed").inc()

        return result

    def run_pass(self, title_ids=None) -> PassSummary:
        summary = PassSummary(started_at=now_utc())
        with ACTIVE_RECONCILIATIONS.track_inprogress():
            try:
                title_ids = list(title_ids) if title_ids is not None else self.store_client.list_titles()
            except Exception as e:
                logger.error(f"Could not list managed titles: {e}")
                summary.error = str(e)
                title_ids = []

            logger.info(f"Starting reconciliation pass over {len(title_ids)} titles")
            for title_id in title_ids:
                try:
                    result = self.reconcile_title(title_id)
                except Exception as e:
                    logger.exception(f"Unexpected error reconciling {title_id}")
                    result = ReconciliationResult(title_id=str(title_id), error=str(e))
                summary.results.append(result)

        summary.finished_at = now_utc()
        self.last_summary = summary
        logger.info(
            f"Reconciliation pass finished: {summary.checked} checked, {summary.updated} updated, {summary.failed} failed"
        )
        return summary

    def reconcile_on_demand(self, title_id, timeout: float = None) -> Optional[ReconciliationResult]:
        """None when the budget runs out; the caller proceeds without the result"""
        title_id = normalize_title_id(title_id)
        return run_with_budget(
            self.reconcile_title,
            timeout or self.on_demand_timeout,
            title_id,
            default=None,
            label=f"reconcile {title_id}",
        )
