"""
Archive Parser - decodes uploaded ZIP archives into typed entries
"""
import io
import logging
import zipfile
from dataclasses import dataclass, field
from typing import List

from constants import MANIFEST_SUFFIX, AUXILIARY_KEY_TABLES
from exceptions import ArchiveException, EmptyArchiveException
from identifiers import basename, is_script_name

logger = logging.getLogger("main")


@dataclass
class ArchiveEntry:
    name: str
    data: bytes = field(repr=False)

    @property
    def basename(self) -> str:
        return basename(self.name)

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@dataclass
class ArchiveContents:
    scripts: List[ArchiveEntry] = field(default_factory=list)
    manifests: List[ArchiveEntry] = field(default_factory=list)
    key_tables: List[ArchiveEntry] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)


def classify_entry(name: str) -> str:
    base = basename(name).lower()
    if base in AUXILIARY_KEY_TABLES:
        return "key_table"
    if is_script_name(base):
        return "script"
    if base.endswith(MANIFEST_SUFFIX):
        return "manifest"
    return "ignored"


def parse_archive(data: bytes) -> ArchiveContents:
    """Split an archive into scripts, manifest files and auxiliary key tables"""
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, ValueError) as e:
        raise ArchiveException(f"Uploaded file is not a valid ZIP archive: {e}")

    contents = ArchiveContents()
    with zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            kind = classify_entry(info.filename)
            if kind == "ignored":
                contents.ignored.append(info.filename)
                continue
            entry = ArchiveEntry(name=info.filename, data=zf.read(info))
            if kind == "script":
                contents.scripts.append(entry)
            elif kind == "manifest":
                contents.manifests.append(entry)
            else:
                contents.key_tables.append(entry)

    logger.info(
        f"Found {len(contents.scripts)} script files, {len(contents.manifests)} manifest files, "
        f"and {len(contents.key_tables)} key tables ({len(contents.ignored)} ignored)"
    )

    if not contents.scripts and not contents.manifests:
        raise EmptyArchiveException()

    return contents


def build_archive(files) -> bytes:
    """Zip a name -> bytes mapping; used for bundle downloads"""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()
