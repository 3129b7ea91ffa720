"""
Version Store - one unit per title holding the current bundle files.

The store is a key-value overwrite store: each write replaces the whole file
set of a title. Backends: a local directory per title, or a branch per title
in a GitHub repository.
"""

import os
import time
import base64
import shutil
import logging
import tempfile
import threading
import weakref
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import requests

from constants import (
    GITHUB_API_BASE,
    MANIFEST_SUFFIX,
    SCRIPT_SUFFIXES,
    AUXILIARY_KEY_TABLES,
    STORE_EXTRA_FILES,
    STORE_DEFAULT_BRANCH,
    STORE_WRITE_MAX_ATTEMPTS,
    STORE_WRITE_BACKOFF_SECONDS,
)
from exceptions import StoreWriteException, StoreReadException
from identifiers import parse_manifest_filename, extract_pins, extract_unverified_depots, is_script_name
from metrics import bundles_committed_total, store_write_retries_total, store_write_duration_seconds
from utils import sanitize_sensitive_data

logger = logging.getLogger("main")


def is_store_file(name: str) -> bool:
    lowered = name.lower()
    return (
        lowered.endswith(SCRIPT_SUFFIXES)
        or lowered.endswith(MANIFEST_SUFFIX)
        or lowered in AUXILIARY_KEY_TABLES
        or lowered in STORE_EXTRA_FILES
    )


class StoreBackend(ABC):
    @abstractmethod
    def read(self, key: str) -> Optional[Dict[str, bytes]]:
        """Current files of a unit, or None when the unit does not exist"""

    @abstractmethod
    def write(self, key: str, files: Dict[str, bytes]) -> bool:
        """Replace the unit's files. Returns True when the unit was created."""

    @abstractmethod
    def list_keys(self) -> List[str]:
        pass

    def exists(self, key: str) -> bool:
        return self.read(key) is not None


class DirectoryBackend(StoreBackend):
    """One directory per title under `root`"""

    def __init__(self, root: str):
        self.root = root
        os.makedirs(root, exist_ok=True)

    def _path(self, key: str) -> str:
        if not key or os.sep in key or key.startswith("."):
            raise ValueError(f"Invalid store key {key!r}")
        return os.path.join(self.root, key)

    def exists(self, key: str) -> bool:
        return os.path.isdir(self._path(key))

    def read(self, key: str) -> Optional[Dict[str, bytes]]:
        path = self._path(key)
        if not os.path.isdir(path):
            return None
        files = {}
        for name in sorted(os.listdir(path)):
            file_path = os.path.join(path, name)
            if os.path.isfile(file_path):
                with open(file_path, "rb") as f:
                    files[name] = f.read()
        return files

    def write(self, key: str, files: Dict[str, bytes]) -> bool:
        path = self._path(key)
        created = not os.path.isdir(path)
        staging = tempfile.mkdtemp(prefix=f".{key}-", dir=self.root)
        try:
            for name, content in files.items():
                with open(os.path.join(staging, os.path.basename(name)), "wb") as f:
                    f.write(content)
            if not created:
                shutil.rmtree(path)
            os.replace(staging, path)
        except Exception:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        return created

    def list_keys(self) -> List[str]:
        return sorted(
            name for name in os.listdir(self.root)
            if not name.startswith(".") and os.path.isdir(os.path.join(self.root, name))
        )


class GitHubBranchBackend(StoreBackend):
    """Branch per title in a GitHub repository, written through the git data API"""

    def __init__(self, owner: str, repo: str, token: str, default_branch: str = STORE_DEFAULT_BRANCH,
                 session=None, api_base: str = GITHUB_API_BASE, timeout: float = 15,
                 sleep=time.sleep):
        if not owner or not repo or not token:
            raise ValueError("GitHub store requires owner, repo and token")
        self.owner = owner
        self.repo = repo
        self.default_branch = default_branch
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/vnd.github.v3+json",
            "Authorization": f"token {token}",
            "User-Agent": "ManifestVault",
        })
        logger.debug(f"GitHub store configured: {sanitize_sensitive_data({'owner': owner, 'repo': repo, 'token': token})}")

    def _url(self, path: str) -> str:
        return f"{self.api_base}/repos/{self.owner}/{self.repo}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs):
        response = self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        if response.status_code >= 400 and response.status_code != 404:
            response.raise_for_status()
        return response

    def _get_ref_sha(self, branch: str) -> Optional[str]:
        response = self._request("GET", f"git/ref/heads/{branch}")
        if response.status_code == 404:
            return None
        return response.json()["object"]["sha"]

    def exists(self, key: str) -> bool:
        return self._get_ref_sha(key) is not None

    def _download(self, url: str) -> bytes:
        last_error = None
        for attempt in range(1, 4):
            try:
                response = self.session.get(url, timeout=60, headers={"Cache-Control": "no-cache"})
                response.raise_for_status()
                return response.content
            except requests.RequestException as e:
                last_error = e
                if attempt < 3:
                    self.sleep(1)
        raise last_error

    def read(self, key: str) -> Optional[Dict[str, bytes]]:
        if self._get_ref_sha(key) is None:
            return None
        response = self._request("GET", "contents/", params={"ref": key, "_": int(time.time())})
        if response.status_code == 404:
            return None
        files = {}
        for entry in response.json():
            if entry.get("type") != "file" or not is_store_file(entry["name"]):
                continue
            files[entry["name"]] = self._download(entry["download_url"])
        return files

    def write(self, key: str, files: Dict[str, bytes]) -> bool:
        branch_sha = self._get_ref_sha(key)
        created = branch_sha is None

        base_sha = self._get_ref_sha(self.default_branch)
        if base_sha is None:
            raise RuntimeError(f"Default branch {self.default_branch} not found in {self.owner}/{self.repo}")
        base_tree = self._request("GET", f"git/commits/{base_sha}").json()["tree"]["sha"]

        if created:
            self._request("POST", "git/refs", json={"ref": f"refs/heads/{key}", "sha": base_sha})

        tree = []
        for name, content in files.items():
            blob = self._request("POST", "git/blobs", json={
                "content": base64.b64encode(content).decode("ascii"),
                "encoding": "base64",
            }).json()
            tree.append({"path": name, "mode": "100644", "type": "blob", "sha": blob["sha"]})

        new_tree = self._request("POST", "git/trees", json={"tree": tree, "base_tree": base_tree}).json()
        message = f"[bot] Add new game files for AppID: {key}" if created else f"[bot] Update files for AppID: {key}"
        commit = self._request("POST", "git/commits", json={
            "message": message,
            "tree": new_tree["sha"],
            "parents": [base_sha],
        }).json()
        self._request("PATCH", f"git/refs/heads/{key}", json={"sha": commit["sha"], "force": True})
        return created

    def list_keys(self) -> List[str]:
        branches = []
        page = 1
        while True:
            response = self._request("GET", "branches", params={"per_page": 100, "page": page})
            data = response.json() if response.status_code == 200 else []
            if not data:
                break
            branches.extend(b["name"] for b in data if b["name"] != self.default_branch)
            page += 1
        return branches


class TitleLocks:
    """Per-title re-entrant locks; different titles never block each other.

    A lock lives only while a caller holds a reference to it.
    """

    def __init__(self):
        self._locks = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def get(self, title_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(title_id)
            if lock is None:
                lock = self._locks[title_id] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, title_id: str):
        lock = self.get(str(title_id))
        with lock:
            yield


@dataclass
class CommitResult:
    title_id: str
    created: bool
    files: Dict[str, bytes] = field(default_factory=dict, repr=False)
    attempts: int = 1


@dataclass
class StoredUnit:
    title_id: str
    files: Dict[str, bytes] = field(repr=False)
    script_name: Optional[str] = None
    revisions: Dict[str, str] = field(default_factory=dict)
    pins: Dict[str, str] = field(default_factory=dict)
    unverified: Set[str] = field(default_factory=set)

    @property
    def script_text(self) -> Optional[str]:
        if not self.script_name:
            return None
        return self.files[self.script_name].decode("utf-8", errors="replace")

    def manifest_bytes(self, depot_id: str) -> Optional[bytes]:
        revision = self.revisions.get(depot_id)
        for name, content in self.files.items():
            depot, rev, _ = parse_manifest_filename(name)
            if depot == depot_id and rev == revision:
                return content
        return None


def summarize_unit(title_id: str, files: Dict[str, bytes]) -> StoredUnit:
    """Depot -> revision pairs held by a unit, taken from its manifest filenames"""
    unit = StoredUnit(title_id=title_id, files=files)
    for name in files:
        if is_script_name(name):
            if unit.script_name is None or name.startswith(f"{title_id}."):
                unit.script_name = name
            continue
        depot, revision, _ = parse_manifest_filename(name)
        if depot and revision:
            unit.revisions[depot] = revision

    script = unit.script_text
    if script:
        unit.pins = extract_pins(script)
        unit.unverified = {d for d in extract_unverified_depots(script) if d in unit.revisions}
        for depot, revision in unit.pins.items():
            if depot in unit.revisions and unit.revisions[depot] != revision:
                logger.warning(f"Script pin {depot}={revision} disagrees with stored manifest {unit.revisions[depot]} for {title_id}")
    return unit


class VersionStoreClient:
    """Commits bundles with bounded retry; serializes work per title"""

    def __init__(self, backend: StoreBackend, locks: TitleLocks = None, sleep=time.sleep,
                 max_attempts: int = STORE_WRITE_MAX_ATTEMPTS, backoff: float = STORE_WRITE_BACKOFF_SECONDS):
        self.backend = backend
        self.locks = locks or TitleLocks()
        self.sleep = sleep
        self.max_attempts = max_attempts
        self.backoff = backoff

    def read_unit(self, title_id: str) -> Optional[Dict[str, bytes]]:
        try:
            return self.backend.read(str(title_id))
        except Exception as e:
            raise StoreReadException(str(title_id), str(e))

    def read_stored_unit(self, title_id: str) -> Optional[StoredUnit]:
        files = self.read_unit(title_id)
        if files is None:
            return None
        return summarize_unit(str(title_id), files)

    def stored_revisions(self, title_id: str) -> Dict[str, str]:
        """Pins declared by the stored script, else the stored manifest filenames"""
        unit = self.read_stored_unit(title_id)
        if unit is None:
            return {}
        return dict(unit.pins or unit.revisions)

    def has_unit(self, title_id: str) -> bool:
        try:
            return self.backend.exists(str(title_id))
        except Exception as e:
            raise StoreReadException(str(title_id), str(e))

    def list_titles(self) -> List[str]:
        return [key for key in self.backend.list_keys() if key.isdigit()]

    def commit(self, title_id: str, bundle) -> CommitResult:
        title_id = str(title_id)
        files = bundle.to_files()
        start = time.time()
        last_error = None
        # Fixed by the first successful read, never by a retry
        created = None

        with self.locks.hold(title_id):
            for attempt in range(1, self.max_attempts + 1):
                try:
                    if created is None:
                        created = self.backend.read(title_id) is None
                    self.backend.write(title_id, files)
                    logger.info(f"Successfully {'created' if created else 'updated'} {title_id} in store ({len(files)} files)")
                    bundles_committed_total.labels(kind="created" if created else "updated").inc()
                    store_write_duration_seconds.observe(time.time() - start)
                    return CommitResult(title_id=title_id, created=created, files=files, attempts=attempt)
                except Exception as e:
                    last_error = e
                    logger.error(f"Upload attempt {attempt} failed for {title_id}: {e}")
                    if attempt < self.max_attempts:
                        store_write_retries_total.inc()
                        self.sleep(self.backoff * attempt)

        raise StoreWriteException(title_id, str(last_error), attempts=self.max_attempts)

    def commit_batch(self, bundles):
        """Commit bundles one after another, in order. Failures stay per title."""
        results = []
        for bundle in bundles:
            try:
                results.append((bundle, self.commit(bundle.title_id, bundle)))
            except StoreWriteException as e:
                results.append((bundle, e))
        return results
