"""
Rule-based identifier extraction for scripts and manifest files.

Pure functions over text and bytes. Manifest identification walks a fixed
precedence list: exact filename pattern, loose filename pattern with a content
sniff, then a synthesized timestamp revision.
"""
import re
import time
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Set, Callable

from constants import (
    SCRIPT_SUFFIXES,
    MANIFEST_SNIFF_BYTES,
    MIN_REVISION_DIGITS,
)
from exceptions import UnextractableTitleIdException

logger = logging.getLogger("main")

TITLE_ID_RE = re.compile(r"^(\d+)\.(?:lua|script)$", re.IGNORECASE)
EMBEDDED_KEY_RE = re.compile(r"addappid\s*\(\s*(\d+)\s*,\s*\d+\s*,\s*[\"']([^\"']+)[\"']\s*\)", re.IGNORECASE)
REFERENCED_ID_RE = re.compile(r"(?:addappid|setManifestid|addtoken)\s*\(\s*(\d+)", re.IGNORECASE)
PIN_RE = re.compile(r"setManifestid\s*\(\s*(\d+)\s*,\s*[\"'](\d+)[\"']", re.IGNORECASE)
STRICT_MANIFEST_RE = re.compile(r"^(\d+)_(\d+)\.manifest$", re.IGNORECASE)
LOOSE_MANIFEST_RE = re.compile(r"(\d+)\.manifest$", re.IGNORECASE)
REVISION_SNIFF_RE = re.compile(r"(\d{%d,})" % MIN_REVISION_DIGITS)
BUILD_ID_RE = re.compile(r"\"buildid\"\s+\"?(\d+)\"?", re.IGNORECASE)

# Trailing comment on pins whose revision was synthesized at ingestion
UNVERIFIED_MARKER = "-- unverified"
UNVERIFIED_PIN_RE = re.compile(r"setManifestid\s*\(\s*(\d+)\s*,[^)]*\)\s*--\s*unverified", re.IGNORECASE)

RULE_EXACT = "exact_filename"
RULE_LOOSE_SNIFF = "loose_filename_sniff"
RULE_SYNTHESIZED = "synthesized"


@dataclass
class ManifestIdentity:
    depot_id: Optional[str]
    revision_id: str
    revision_synthesized: bool = False
    rule: str = RULE_EXACT


def basename(name: str) -> str:
    """Archive entry names use '/' regardless of platform"""
    return name.replace("\\", "/").rsplit("/", 1)[-1]


def is_script_name(name: str) -> bool:
    return basename(name).lower().endswith(SCRIPT_SUFFIXES)


def extract_title_id(filename: str) -> str:
    match = TITLE_ID_RE.match(basename(filename))
    if not match:
        raise UnextractableTitleIdException(filename)
    return match.group(1)


def extract_embedded_keys(script_text: str) -> Dict[str, str]:
    """Map every `addappid(D, n, "K")` registration to D -> K"""
    keys = {}
    for line in script_text.splitlines():
        match = EMBEDDED_KEY_RE.search(line)
        if match:
            keys[match.group(1)] = match.group(2)
    return keys


def extract_referenced_ids(script_text: str) -> Set[str]:
    return set(REFERENCED_ID_RE.findall(script_text))


def extract_pins(script_text: str) -> Dict[str, str]:
    return {depot: revision for depot, revision in PIN_RE.findall(script_text)}


def extract_unverified_depots(script_text: str) -> Set[str]:
    return set(UNVERIFIED_PIN_RE.findall(script_text))


def parse_manifest_filename(name: str):
    """
    Returns (depot_id, revision_id, rule) from the filename alone.
    revision_id is None when only the loose pattern matched; both are None
    when neither did.
    """
    base = basename(name)
    strict = STRICT_MANIFEST_RE.match(base)
    if strict:
        return strict.group(1), strict.group(2), RULE_EXACT
    loose = LOOSE_MANIFEST_RE.search(base)
    if loose:
        return loose.group(1), None, RULE_LOOSE_SNIFF
    return None, None, None


def sniff_revision(raw: bytes) -> Optional[str]:
    """Look for a long digit run in the first kilobyte; heuristic only"""
    if not raw:
        return None
    sample = raw[:MANIFEST_SNIFF_BYTES].decode("utf-8", errors="ignore")
    match = REVISION_SNIFF_RE.search(sample)
    return match.group(1) if match else None


def synthesize_revision(clock: Callable[[], float] = time.time) -> str:
    return str(int(clock() * 1000))


def identify_manifest(name: str, raw: bytes, clock: Callable[[], float] = time.time) -> ManifestIdentity:
    depot_id, revision_id, rule = parse_manifest_filename(name)
    if rule == RULE_EXACT:
        return ManifestIdentity(depot_id, revision_id, False, RULE_EXACT)

    if rule == RULE_LOOSE_SNIFF:
        sniffed = sniff_revision(raw)
        if sniffed:
            logger.info(f"Extracted from content sample - Depot ID: {depot_id}, Manifest ID: {sniffed}")
            return ManifestIdentity(depot_id, sniffed, False, RULE_LOOSE_SNIFF)

    logger.warning(f"Could not extract manifest info from {name}, using a synthesized revision")
    return ManifestIdentity(depot_id, synthesize_revision(clock), True, RULE_SYNTHESIZED)


def manifest_belongs_to_title(identity: ManifestIdentity, filename: str, title_id: str, referenced_ids: Set[str]) -> bool:
    if identity.depot_id and identity.depot_id in referenced_ids:
        return True
    return title_id in basename(filename)


def extract_build_version(raw: bytes) -> Optional[str]:
    if not raw:
        return None
    match = BUILD_ID_RE.search(raw.decode("utf-8", errors="ignore"))
    return match.group(1) if match else None
