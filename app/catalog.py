"""
Catalog service client (SteamCMD info API + Steam store API)
Read-only; every upstream request goes through a shared rate limiter.
"""

import re
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Callable

import requests

from constants import (
    STEAMCMD_INFO_URL,
    STEAM_STORE_URL,
    CATALOG_MIN_INTERVAL,
    CATALOG_TIMEOUT,
    DECORATIVE_PATTERNS,
    UNKNOWN_TITLE_NAME,
)
from bundles import manifest_filename
from exceptions import CatalogServiceException
from metrics import catalog_requests_total

logger = logging.getLogger("main")


class RateLimiter:
    """Enforces a minimum spacing between calls, across threads"""

    def __init__(self, min_interval: float = CATALOG_MIN_INTERVAL, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.min_interval = min_interval
        self.clock = clock
        self.sleep = sleep
        self._last_call = None
        self._lock = threading.Lock()

    def wait(self) -> float:
        """Block until the next call is allowed. Returns the time slept."""
        with self._lock:
            waited = 0.0
            now = self.clock()
            if self._last_call is not None:
                elapsed = now - self._last_call
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    self.sleep(waited)
                    now = self.clock()
            self._last_call = now
            return waited


@dataclass
class CatalogDepot:
    depot_id: str
    revision_id: Optional[str] = None
    name: Optional[str] = None
    platform_tag: Optional[str] = None
    language_tag: Optional[str] = None
    is_shared: bool = False
    shared_from_title: Optional[str] = None
    dlc_app_id: Optional[str] = None


@dataclass
class Extension:
    extension_id: str
    name: str
    has_own_depot: bool = False
    depot_ids: List[str] = field(default_factory=list)
    decorative: bool = False


@dataclass
class TitleMetadata:
    title_id: str
    name: str
    extensions: List[Extension] = field(default_factory=list)
    current_revisions: Dict[str, str] = field(default_factory=dict)
    depots: Dict[str, CatalogDepot] = field(default_factory=dict)


def is_decorative(name: str, patterns=DECORATIVE_PATTERNS) -> bool:
    lowered = (name or "").lower()
    return any(pattern in lowered for pattern in patterns)


def parse_depots(raw_depots: Dict) -> Dict[str, CatalogDepot]:
    depots = {}
    for depot_id, depot_data in (raw_depots or {}).items():
        # Skip config entries like "branches" or "baselanguages"
        if not str(depot_id).isdigit() or not isinstance(depot_data, dict):
            continue
        manifests = depot_data.get("manifests") or {}
        public = manifests.get("public") or {}
        revision = public.get("gid") if isinstance(public, dict) else public
        config = depot_data.get("config") or {}
        depots[str(depot_id)] = CatalogDepot(
            depot_id=str(depot_id),
            revision_id=str(revision) if revision else None,
            name=depot_data.get("name"),
            platform_tag=config.get("oslist"),
            language_tag=config.get("language") or None,
            is_shared=str(depot_data.get("sharedinstall", "0")) == "1",
            shared_from_title=str(depot_data["depotfromapp"]) if depot_data.get("depotfromapp") else None,
            dlc_app_id=str(depot_data["dlcappid"]) if depot_data.get("dlcappid") else None,
        )
    return depots


def parse_extensions(app_data: Dict, depots: Dict[str, CatalogDepot], patterns=DECORATIVE_PATTERNS) -> List[Extension]:
    listed = (app_data.get("extended") or {}).get("listofdlc") or ""
    extension_ids = [x for x in re.split(r"[,\s]+", str(listed)) if x.isdigit()]
    for depot in depots.values():
        if depot.dlc_app_id and depot.dlc_app_id not in extension_ids:
            extension_ids.append(depot.dlc_app_id)

    extensions = []
    for extension_id in extension_ids:
        own = [d for d in depots.values() if d.dlc_app_id == extension_id]
        name = next((d.name for d in own if d.name), None) or f"DLC {extension_id}"
        extensions.append(Extension(
            extension_id=extension_id,
            name=name,
            has_own_depot=bool(own),
            depot_ids=[d.depot_id for d in own],
            decorative=is_decorative(name, patterns),
        ))
    return extensions


class CatalogClient:
    """Fetches title metadata and manifest bytes from the upstream catalog"""

    def __init__(self, info_url: str = STEAMCMD_INFO_URL, store_url: str = STEAM_STORE_URL,
                 manifest_url: str = "", rate_limiter: RateLimiter = None, session=None,
                 timeout: float = CATALOG_TIMEOUT, decorative_patterns=None):
        self.info_url = info_url.rstrip("/")
        self.store_url = store_url
        self.manifest_url = (manifest_url or "").rstrip("/")
        self.rate_limiter = rate_limiter or RateLimiter()
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "ManifestVault/1.0"})
        self.timeout = timeout
        self.decorative_patterns = decorative_patterns or DECORATIVE_PATTERNS

    @classmethod
    def from_settings(cls, settings: Dict, rate_limiter: RateLimiter = None) -> "CatalogClient":
        catalog = settings.get("catalog", {})
        limiter = rate_limiter or RateLimiter(float(catalog.get("min_interval", CATALOG_MIN_INTERVAL)))
        return cls(
            info_url=catalog.get("info_url", STEAMCMD_INFO_URL),
            store_url=catalog.get("store_url", STEAM_STORE_URL),
            manifest_url=catalog.get("manifest_url", ""),
            rate_limiter=limiter,
            timeout=float(catalog.get("timeout", CATALOG_TIMEOUT)),
            decorative_patterns=settings.get("dlc", {}).get("decorative_patterns"),
        )

    def _get(self, url: str, **kwargs):
        self.rate_limiter.wait()
        try:
            response = self.session.get(url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            catalog_requests_total.labels(status="error").inc()
            raise CatalogServiceException(f"Catalog request to {url} failed: {e}")
        catalog_requests_total.labels(status=str(response.status_code)).inc()
        return response

    def get_title_metadata(self, title_id: str) -> TitleMetadata:
        title_id = str(title_id)
        logger.info(f"Fetching catalog info for {title_id}")
        response = self._get(f"{self.info_url}/{title_id}")
        if response.status_code != 200:
            raise CatalogServiceException(f"Catalog returned {response.status_code} for {title_id}", title_id=title_id)
        try:
            payload = response.json()
        except ValueError:
            raise CatalogServiceException(f"Catalog returned invalid JSON for {title_id}", title_id=title_id)

        if payload.get("status") != "success":
            raise CatalogServiceException(f"Catalog lookup for {title_id} was not successful", title_id=title_id)

        app_data = (payload.get("data") or {}).get(title_id)
        if not app_data:
            raise CatalogServiceException(f"Catalog has no data for {title_id}", title_id=title_id)

        depots = parse_depots(app_data.get("depots"))
        name = (app_data.get("common") or {}).get("name") or UNKNOWN_TITLE_NAME
        return TitleMetadata(
            title_id=title_id,
            name=name,
            extensions=parse_extensions(app_data, depots, self.decorative_patterns),
            current_revisions={d.depot_id: d.revision_id for d in depots.values() if d.revision_id},
            depots=depots,
        )

    def get_title_name(self, title_id: str) -> str:
        """Name from the store API, falling back to the info API. Never raises."""
        try:
            response = self._get(self.store_url, params={"appids": title_id, "cc": "us", "l": "en"})
            if response.status_code == 200:
                app_data = (response.json() or {}).get(str(title_id)) or {}
                if app_data.get("success") and (app_data.get("data") or {}).get("name"):
                    return app_data["data"]["name"]
        except (CatalogServiceException, ValueError) as e:
            logger.debug(f"Store lookup failed for {title_id}: {e}")

        try:
            return self.get_title_metadata(title_id).name
        except CatalogServiceException:
            return UNKNOWN_TITLE_NAME

    def fetch_manifest(self, depot_id: str, revision_id: str) -> Optional[bytes]:
        """Download manifest bytes from the configured mirror; None when unavailable"""
        if not self.manifest_url:
            logger.debug("No manifest mirror configured")
            return None
        response = self._get(f"{self.manifest_url}/{manifest_filename(depot_id, revision_id)}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise CatalogServiceException(f"Manifest mirror returned {response.status_code} for {depot_id}/{revision_id}")
        return response.content or None
