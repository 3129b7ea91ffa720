"""
Bundle Assembler

Turns one parsed archive into an UploadBatch: per script, identify the title,
match manifest files, resolve depot keys, synthesize the script and collect
the bundle. Titles fail independently of each other.
"""
import time
import logging
from typing import Callable, Dict, List, Optional

from constants import UNKNOWN_TITLE_NAME, AUXILIARY_KEY_TABLES, STORE_EXTRA_FILES
from bundles import Bundle, Depot, ManifestFile, TitleReport, UnresolvedKey, UploadBatch
from exceptions import VaultException, UnresolvedKeyException, UnextractableTitleIdException
from identifiers import (
    extract_title_id,
    extract_embedded_keys,
    extract_referenced_ids,
    identify_manifest,
    manifest_belongs_to_title,
)
from key_table import KeyResolver
from lua_script import synthesize_script
from version_store import summarize_unit

logger = logging.getLogger("main")


class BundleAssembler:
    def __init__(self, key_resolver: KeyResolver, catalog=None, clock: Callable[[], float] = time.time,
                 now: Callable = None):
        self.key_resolver = key_resolver
        self.catalog = catalog
        self.clock = clock
        self.now = now

    def _now(self):
        return self.now() if self.now else None

    def title_name(self, title_id: str) -> str:
        if self.catalog is None:
            return UNKNOWN_TITLE_NAME
        try:
            return self.catalog.get_title_name(title_id) or UNKNOWN_TITLE_NAME
        except VaultException as e:
            logger.warning(f"Name lookup failed for {title_id}: {e.message}")
            return UNKNOWN_TITLE_NAME

    def assemble(self, contents) -> UploadBatch:
        batch = UploadBatch()
        aux_tables = {entry.basename: entry.data for entry in contents.key_tables if entry.data.strip()}

        for script_entry in contents.scripts:
            try:
                bundle = self._assemble_title(script_entry, contents.manifests, aux_tables, batch)
            except VaultException as e:
                logger.error(f"Error processing {script_entry.name}: {e.message}")
                batch.parse_errors.append(e.message)
                title_id = None if isinstance(e, UnextractableTitleIdException) else extract_title_id(script_entry.name)
                batch.skipped_titles.append(TitleReport(
                    title_id=title_id,
                    source_name=script_entry.basename,
                    skip_reason=e.message,
                    errors=[e.message],
                ))
                continue
            if bundle is not None:
                batch.bundles.append(bundle)

        logger.info(
            f"Assembled {len(batch.bundles)} bundles, {len(batch.unresolved_keys)} unresolved keys, "
            f"{len(batch.parse_errors)} errors"
        )
        return batch

    def _assemble_title(self, script_entry, manifest_entries, aux_tables: Dict[str, bytes],
                        batch: UploadBatch) -> Optional[Bundle]:
        title_id = extract_title_id(script_entry.name)
        name = self.title_name(title_id)
        text = script_entry.text
        embedded_keys = extract_embedded_keys(text)
        referenced_ids = extract_referenced_ids(text)
        logger.info(f"Processing {title_id} ({name}): {len(embedded_keys)} embedded keys, {len(referenced_ids)} referenced IDs")

        manifests: Dict[str, ManifestFile] = {}
        depots: Dict[str, Depot] = {}
        dropped = set()
        unresolved: List[UnresolvedKey] = []
        empty_count = 0

        matched = []
        for entry in manifest_entries:
            identity = identify_manifest(entry.name, entry.data, self.clock)
            if manifest_belongs_to_title(identity, entry.name, title_id, referenced_ids):
                matched.append((entry, identity))
        claimed = {identity.depot_id for _, identity in matched if identity.depot_id}

        for entry, identity in matched:
            if not entry.data:
                message = f"Empty or invalid manifest file {entry.basename} for {title_id}"
                logger.warning(message)
                batch.parse_errors.append(message)
                empty_count += 1
                if identity.depot_id:
                    dropped.add(identity.depot_id)
                continue

            try:
                resolution = self.key_resolver.require(title_id, identity.depot_id, embedded_keys,
                                                       claimed=claimed, manifest_filename=entry.basename)
            except UnresolvedKeyException as e:
                unresolved.append(UnresolvedKey(
                    title_id=title_id,
                    depot_id=e.depot_id,
                    manifest_filename=entry.basename,
                    revision_id=identity.revision_id,
                    title_name=name,
                ))
                if identity.depot_id:
                    dropped.add(identity.depot_id)
                continue

            depot_id = resolution.depot_id
            if resolution.rewritten and identity.depot_id:
                dropped.add(identity.depot_id)

            manifest = ManifestFile(
                depot_id=depot_id,
                revision_id=identity.revision_id,
                raw_bytes=entry.data,
                source_name=entry.basename,
                revision_synthesized=identity.revision_synthesized,
            )
            if depot_id in manifests:
                logger.warning(f"Duplicate manifest for depot {depot_id}: {entry.basename} replaces {manifests[depot_id].source_name}")
            manifests[depot_id] = manifest
            depots[depot_id] = Depot(
                depot_id=depot_id,
                revision_id=identity.revision_id,
                decryption_key=resolution.key,
                revision_synthesized=identity.revision_synthesized,
            )

        batch.unresolved_keys.extend(unresolved)
        dropped -= set(depots)

        if not depots:
            message = f"No valid depots with keys found for {title_id}"
            logger.warning(message)
            batch.parse_errors.append(message)
            batch.skipped_titles.append(TitleReport(
                title_id=title_id,
                name=name,
                source_name=script_entry.basename,
                skipped_depot_count=len(unresolved) + empty_count,
                unresolved_keys=list(unresolved),
                errors=[message],
                skip_reason=message,
            ))
            return None

        script = synthesize_script(title_id, name, depots.values(), prior_text=text,
                                   dropped_depot_ids=dropped, now=self._now())
        bundle = Bundle(
            title_id=title_id,
            script=script,
            name=name,
            manifest_files=list(manifests.values()),
            auxiliary_key_tables=dict(aux_tables),
            depots=list(depots.values()),
            skipped_depot_count=len(unresolved) + empty_count,
        )
        bundle.validate()
        logger.info(f"Bundle for {title_id}: {bundle.depot_count} depots, {bundle.skipped_depot_count} skipped")
        return bundle

    def assemble_from_revisions(self, title_id: str, name: Optional[str], prior_files: Dict[str, bytes],
                                latest_revisions: Dict[str, str], manifest_source) -> Bundle:
        """
        Rebuild a stored unit with depots re-pinned to `latest_revisions`.

        Only depots held by the unit are considered. A depot whose new manifest
        cannot be fetched through `manifest_source(depot_id, revision_id)` keeps
        its stored manifest. Unverified depots are re-pinned even when the
        revision looks unchanged.
        """
        unit = summarize_unit(title_id, prior_files)
        prior_text = unit.script_text or ""
        embedded_keys = extract_embedded_keys(prior_text)

        manifests: List[ManifestFile] = []
        depots: List[Depot] = []
        dropped = set()

        for depot_id, stored_revision in sorted(unit.revisions.items()):
            resolution = self.key_resolver.resolve(title_id, depot_id, embedded_keys)
            if resolution is None or resolution.depot_id != depot_id:
                logger.warning(f"Dropping depot {depot_id} of {title_id} during rebuild: no key")
                dropped.add(depot_id)
                continue

            target = latest_revisions.get(depot_id, stored_revision)
            synthesized = depot_id in unit.unverified
            raw = None
            if target != stored_revision or synthesized:
                raw = manifest_source(depot_id, target)
                if raw:
                    logger.info(f"Depot {depot_id} of {title_id}: {stored_revision} -> {target}")
                    synthesized = False
                else:
                    logger.warning(f"Manifest {depot_id}_{target} unavailable, keeping {stored_revision}")
            if not raw:
                target = stored_revision
                raw = unit.manifest_bytes(depot_id)

            manifests.append(ManifestFile(depot_id, target, raw, revision_synthesized=synthesized))
            depots.append(Depot(depot_id=depot_id, revision_id=target, decryption_key=resolution.key,
                                revision_synthesized=synthesized))

        carried = {
            file_name: content for file_name, content in prior_files.items()
            if file_name.lower() in AUXILIARY_KEY_TABLES or file_name.lower() in STORE_EXTRA_FILES
        }
        script = synthesize_script(title_id, name, depots, prior_text=prior_text,
                                   dropped_depot_ids=dropped, now=self._now())
        bundle = Bundle(
            title_id=title_id,
            script=script,
            name=name,
            manifest_files=manifests,
            auxiliary_key_tables=carried,
            depots=depots,
            skipped_depot_count=len(dropped),
        )
        bundle.validate()
        return bundle
