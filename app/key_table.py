"""
Depot key table and key resolution
"""
import json
import os
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from constants import DEPOT_SUFFIX_CANDIDATES
from exceptions import UnresolvedKeyException
from utils import safe_write_json, mask_key

logger = logging.getLogger("main")


class JsonKeyValueStore:
    """Flat string -> string mapping persisted as a JSON file. Last write wins per key."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.RLock()
        self._data: Optional[Dict[str, str]] = None

    def _load(self) -> Dict[str, str]:
        if self._data is not None:
            return self._data
        data = {}
        if os.path.exists(self.path):
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    data = {str(k): str(v) for k, v in loaded.items()}
                else:
                    logger.warning(f"Ignoring {self.path}: expected a JSON object")
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load {self.path}: {e}")
        else:
            logger.debug(f"{self.path} does not exist yet, starting empty")
        self._data = data
        return data

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(str(key))

    def set(self, key: str, value: str):
        self.update({key: value})

    def update(self, values: Dict[str, str]):
        with self._lock:
            data = self._load()
            data.update({str(k): str(v) for k, v in values.items()})
            safe_write_json(self.path, data)

    def all(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._load())

    def reload(self):
        with self._lock:
            self._data = None

    def __contains__(self, key) -> bool:
        with self._lock:
            return str(key) in self._load()

    def __len__(self) -> int:
        with self._lock:
            return len(self._load())


class KeyTable:
    """Persistent depotId -> decryption key mapping"""

    def __init__(self, store):
        self.store = store

    def get(self, depot_id: str) -> Optional[str]:
        return self.store.get(depot_id) or None

    def set(self, depot_id: str, key: str):
        self.store.set(depot_id, key)
        logger.info(f"Depot key stored for {depot_id} ({mask_key(key)})")

    def update(self, keys: Dict[str, str]):
        if keys:
            self.store.update(keys)

    def __contains__(self, depot_id) -> bool:
        return depot_id in self.store

    def __len__(self) -> int:
        return len(self.store)


class BuildVersionLedger:
    """Last build version seen per title"""

    def __init__(self, store):
        self.store = store

    def get(self, title_id: str) -> Optional[str]:
        return self.store.get(title_id)

    def record(self, title_id: str, build_version: str):
        self.store.set(title_id, build_version)


SOURCE_EMBEDDED = "embedded"
SOURCE_KEY_TABLE = "key_table"


@dataclass
class KeyResolution:
    depot_id: str
    key: str
    source: str
    rewritten: bool = False


class KeyResolver:
    """
    Resolves a depot's key. First hit wins:
      1. key embedded in the script for the depot
      2. key table entry for the depot
      3. titleId + suffix candidates, checking (1) then (2) each time; a hit
         re-identifies the depot as the candidate
    """

    def __init__(self, key_table: KeyTable, suffixes=DEPOT_SUFFIX_CANDIDATES):
        self.key_table = key_table
        self.suffixes = tuple(suffixes)

    def _lookup(self, depot_id: str, embedded_keys: Dict[str, str]) -> Optional[KeyResolution]:
        key = embedded_keys.get(depot_id)
        if key:
            return KeyResolution(depot_id, key, SOURCE_EMBEDDED)
        key = self.key_table.get(depot_id)
        if key:
            return KeyResolution(depot_id, key, SOURCE_KEY_TABLE)
        return None

    def resolve(self, title_id: str, depot_id: Optional[str], embedded_keys: Optional[Dict[str, str]] = None,
                claimed=()) -> Optional[KeyResolution]:
        """
        `claimed` holds depot IDs already identified by other manifest files of
        the same title; they are never used as re-identification candidates.
        """
        embedded_keys = embedded_keys or {}

        if depot_id:
            resolution = self._lookup(depot_id, embedded_keys)
            if resolution:
                return resolution

        for suffix in self.suffixes:
            candidate = f"{title_id}{suffix}"
            if candidate != depot_id and candidate in claimed:
                continue
            resolution = self._lookup(candidate, embedded_keys)
            if resolution:
                if candidate != depot_id:
                    logger.warning(f"Found depot key for {candidate} instead of {depot_id}, re-identifying manifest")
                    resolution.rewritten = True
                return resolution

        logger.warning(f"No depot key found for depot {depot_id} (title {title_id})")
        return None

    def require(self, title_id: str, depot_id: Optional[str], embedded_keys: Optional[Dict[str, str]] = None,
                claimed=(), manifest_filename: str = None) -> KeyResolution:
        resolution = self.resolve(title_id, depot_id, embedded_keys, claimed=claimed)
        if resolution is None:
            raise UnresolvedKeyException(title_id, depot_id or "unknown", manifest_filename)
        return resolution
