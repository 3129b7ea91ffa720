"""
Ingestion service: archive bytes in, commit report out
"""
import logging
from typing import List, Optional

from bundles import IngestionReport, TitleReport, normalize_title_id
from archive import parse_archive
from exceptions import StoreWriteException, ValidationException
from identifiers import extract_build_version
from metrics import archives_ingested_total, unresolved_keys_total

logger = logging.getLogger("main")

MAX_LISTED_MISSING_KEYS = 25


def render_missing_keys(report: IngestionReport, limit: int = MAX_LISTED_MISSING_KEYS) -> List[str]:
    """Remediation lines: one per depot awaiting a key"""
    missing = report.unresolved_keys
    if not missing:
        return []
    lines = [f"Found {len(missing)} manifest(s) that need depot keys:"]
    for item in missing[:limit]:
        lines.append(
            f"{item.title_name or 'Unknown Game'} (AppID: {item.title_id}) "
            f"- Depot ID: {item.depot_id}, Manifest ID: {item.revision_id}, File: {item.manifest_filename}"
        )
    if len(missing) > limit:
        lines.append(f"...and {len(missing) - limit} more missing depot keys")
    lines.append("Add each depot key through POST /api/v1/keys to resolve these.")
    return lines


class IngestionService:
    def __init__(self, assembler, store_client, build_versions=None, key_table=None):
        self.assembler = assembler
        self.store_client = store_client
        self.build_versions = build_versions
        self.key_table = key_table
        self.last_report: Optional[IngestionReport] = None

    def ingest_archive(self, data: bytes) -> IngestionReport:
        try:
            contents = parse_archive(data)
        except Exception:
            archives_ingested_total.labels(status="rejected").inc()
            raise

        batch = self.assembler.assemble(contents)
        report = IngestionReport(unresolved_keys=list(batch.unresolved_keys), errors=list(batch.parse_errors))
        unresolved_keys_total.inc(len(batch.unresolved_keys))

        # Sequential, archive order
        for bundle in batch.bundles:
            title_report = TitleReport(
                title_id=bundle.title_id,
                name=bundle.name,
                depot_count=bundle.depot_count,
                skipped_depot_count=bundle.skipped_depot_count,
                unresolved_keys=[u for u in batch.unresolved_keys if u.title_id == bundle.title_id],
            )
            logger.info(f"Committing {bundle.title_id}: {bundle.depot_count} depots, {bundle.size_mb:.2f} MB")
            try:
                result = self.store_client.commit(bundle.title_id, bundle)
            except StoreWriteException as e:
                logger.error(f"Failed to commit {bundle.title_id}: {e.message}")
                title_report.errors.append(e.message)
                report.errors.append(e.message)
            else:
                title_report.created = result.created
                title_report.build_version = self._record_build_version(bundle)
            report.titles.append(title_report)
        report.titles.extend(batch.skipped_titles)

        status = "success" if report.titles and not any(t.errors for t in report.titles) else "partial"
        if not report.committed_titles:
            status = "failed"
        archives_ingested_total.labels(status=status).inc()

        logger.info(
            f"Ingestion finished: {report.created_count} created, {report.updated_count} updated, "
            f"{len(report.unresolved_keys)} missing keys, {len(report.errors)} errors"
        )
        self.last_report = report
        return report

    def _record_build_version(self, bundle) -> Optional[str]:
        for manifest in bundle.manifest_files:
            build_version = extract_build_version(manifest.raw_bytes)
            if build_version:
                break
        else:
            return None

        if self.build_versions is not None:
            previous = self.build_versions.get(bundle.title_id)
            if previous != build_version:
                self.build_versions.record(bundle.title_id, build_version)
                logger.info(f"Build version for {bundle.title_id}: {previous or 'none'} -> {build_version}")
        return build_version

    def add_depot_key(self, depot_id, key: str):
        """Independent of any commit; re-adding the same key is a no-op"""
        if self.key_table is None:
            raise ValidationException("No key table configured")
        depot_id = normalize_title_id(depot_id)
        key = (key or "").strip()
        if not key:
            raise ValidationException("Depot key must not be empty")
        if self.key_table.get(depot_id) == key:
            return False
        self.key_table.set(depot_id, key)
        return True

    def summary(self, report: Optional[IngestionReport] = None) -> str:
        report = report or self.last_report
        if report is None:
            return "No archive ingested yet"
        lines = [f"Processed {len(report.titles)} title(s): {report.created_count} created, {report.updated_count} updated"]
        for title in report.titles:
            if title.skip_reason:
                lines.append(f"- {title.source_name} ({title.title_id or 'no AppID'}): skipped, {title.skip_reason}")
                continue
            line = f"- {title.name or 'Unknown Game'} ({title.title_id}): {title.status}, {title.depot_count} depots"
            if title.skipped_depot_count:
                line += f", {title.skipped_depot_count} skipped"
            lines.append(line)
        lines.extend(f"! {error}" for error in report.errors)
        lines.extend(render_missing_keys(report))
        return "\n".join(lines)
