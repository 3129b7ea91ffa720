"""
Bundle data model: depots, manifest files, scripts and the per-upload batch
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
import re

from constants import MANIFEST_SUFFIX, SCRIPT_SUFFIX
from exceptions import ValidationException

_TITLE_ID_RE = re.compile(r"^\d+$")


def normalize_title_id(value) -> str:
    """Title IDs travel as strings; accept ints and padded strings"""
    text = str(value).strip().lstrip("+")
    if not _TITLE_ID_RE.match(text):
        raise ValidationException(f"Invalid title ID '{value}'. Please provide a numeric ID.")
    return text


def manifest_filename(depot_id: str, revision_id: str) -> str:
    return f"{depot_id}_{revision_id}{MANIFEST_SUFFIX}"


def script_filename(title_id: str) -> str:
    return f"{title_id}{SCRIPT_SUFFIX}"


@dataclass
class Depot:
    depot_id: str
    revision_id: str
    decryption_key: Optional[str] = None
    platform_tag: Optional[str] = None
    language_tag: Optional[str] = None
    is_shared: bool = False
    shared_from_title: Optional[str] = None
    revision_synthesized: bool = False


@dataclass(frozen=True)
class ManifestFile:
    depot_id: str
    revision_id: str
    raw_bytes: bytes = field(repr=False)
    source_name: Optional[str] = None
    revision_synthesized: bool = False

    @property
    def filename(self) -> str:
        return manifest_filename(self.depot_id, self.revision_id)

    @property
    def size(self) -> int:
        return len(self.raw_bytes)


@dataclass
class Script:
    title_id: str
    text: str

    @property
    def filename(self) -> str:
        return script_filename(self.title_id)

    def pins(self) -> Dict[str, str]:
        from identifiers import extract_pins
        return extract_pins(self.text)

    def embedded_keys(self) -> Dict[str, str]:
        from identifiers import extract_embedded_keys
        return extract_embedded_keys(self.text)

    def to_bytes(self) -> bytes:
        return self.text.encode("utf-8")


@dataclass
class Bundle:
    """Full file set committed to the version store for one title"""

    title_id: str
    script: Script
    name: Optional[str] = None
    manifest_files: List[ManifestFile] = field(default_factory=list)
    auxiliary_key_tables: Dict[str, bytes] = field(default_factory=dict)
    depots: List[Depot] = field(default_factory=list)
    skipped_depot_count: int = 0

    def manifest_for(self, depot_id: str) -> Optional[ManifestFile]:
        return next((m for m in self.manifest_files if m.depot_id == depot_id), None)

    def revisions(self) -> Dict[str, str]:
        return {m.depot_id: m.revision_id for m in self.manifest_files}

    @property
    def depot_count(self) -> int:
        return len(self.manifest_files)

    def to_files(self) -> Dict[str, bytes]:
        files = {self.script.filename: self.script.to_bytes()}
        for manifest in self.manifest_files:
            files[manifest.filename] = manifest.raw_bytes
        for name, content in self.auxiliary_key_tables.items():
            if content:
                files[name] = content
        return files

    def validate(self):
        invalid = [name for name, content in self.to_files().items() if not content]
        if invalid:
            raise ValidationException(f"Invalid files detected: {', '.join(invalid)}")

    @property
    def size_mb(self) -> float:
        return sum(len(c) for c in self.to_files().values()) / (1024 * 1024)


@dataclass
class UnresolvedKey:
    title_id: str
    depot_id: str
    manifest_filename: str
    revision_id: Optional[str] = None
    title_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title_id": self.title_id,
            "depot_id": self.depot_id,
            "manifest_filename": self.manifest_filename,
            "revision_id": self.revision_id,
            "title_name": self.title_name,
        }


@dataclass
class UploadBatch:
    """Ephemeral result of assembling one archive; never persisted"""

    bundles: List[Bundle] = field(default_factory=list)
    unresolved_keys: List[UnresolvedKey] = field(default_factory=list)
    parse_errors: List[str] = field(default_factory=list)
    skipped_titles: List[TitleReport] = field(default_factory=list)


@dataclass
class TitleReport:
    title_id: Optional[str]
    name: Optional[str] = None
    created: Optional[bool] = None
    depot_count: int = 0
    skipped_depot_count: int = 0
    unresolved_keys: List[UnresolvedKey] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    build_version: Optional[str] = None
    source_name: Optional[str] = None
    skip_reason: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.created is not None

    @property
    def status(self) -> str:
        if self.skip_reason:
            return "skipped"
        if self.created is None:
            return "failed"
        return "created" if self.created else "updated"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title_affected": self.title_id,
            "name": self.name,
            "source_name": self.source_name,
            "status": self.status,
            "skip_reason": self.skip_reason,
            "depot_count": self.depot_count,
            "skipped_depot_count": self.skipped_depot_count,
            "unresolved_keys": [u.to_dict() for u in self.unresolved_keys],
            "errors": list(self.errors),
            "build_version": self.build_version,
        }


@dataclass
class IngestionReport:
    titles: List[TitleReport] = field(default_factory=list)
    unresolved_keys: List[UnresolvedKey] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return sum(1 for t in self.titles if t.created is True)

    @property
    def updated_count(self) -> int:
        return sum(1 for t in self.titles if t.created is False)

    @property
    def committed_titles(self) -> List[TitleReport]:
        return [t for t in self.titles if t.committed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "titles": [t.to_dict() for t in self.titles],
            "created_count": self.created_count,
            "updated_count": self.updated_count,
            "unresolved_keys": [u.to_dict() for u in self.unresolved_keys],
            "errors": list(self.errors),
        }
