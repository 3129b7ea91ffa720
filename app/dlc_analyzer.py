"""
DLC completeness: which content-bearing extensions of a title have bundles
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from constants import DLC_ANALYSIS_TIMEOUT
from bundles import normalize_title_id
from exceptions import VaultException
from utils import run_with_budget

logger = logging.getLogger("main")

TRACKED_VIA_BUNDLE = "bundle"
TRACKED_VIA_BASE = "base_bundle"


@dataclass
class ExtensionDetail:
    extension_id: str
    name: str
    decorative: bool
    has_own_depot: bool
    tracked: bool = False
    tracked_via: Optional[str] = None

    def to_dict(self):
        return {
            "extension_id": self.extension_id,
            "name": self.name,
            "type": "extra" if self.decorative else "content",
            "has_own_depot": self.has_own_depot,
            "tracked": self.tracked,
            "tracked_via": self.tracked_via,
        }


@dataclass
class DLCAnalysis:
    title_id: str
    total_extensions: int = 0
    content_count: int = 0
    decorative_count: int = 0
    tracked_content_count: int = 0
    missing_content_count: int = 0
    completion_percent: float = 0.0
    per_item_detail: List[ExtensionDetail] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self):
        return {
            "title_id": self.title_id,
            "total_extensions": self.total_extensions,
            "content_count": self.content_count,
            "decorative_count": self.decorative_count,
            "tracked_content_count": self.tracked_content_count,
            "missing_content_count": self.missing_content_count,
            "completion_percent": self.completion_percent,
            "per_item_detail": [d.to_dict() for d in self.per_item_detail],
            "error": self.error,
        }


def completion_percent(tracked: int, content: int) -> float:
    if not content:
        return 0.0
    return round(tracked / content * 100, 2)


class DLCAnalyzer:
    def __init__(self, catalog, store_client, timeout: float = DLC_ANALYSIS_TIMEOUT):
        self.catalog = catalog
        self.store_client = store_client
        self.timeout = timeout

    def _analyze(self, title_id: str) -> DLCAnalysis:
        metadata = self.catalog.get_title_metadata(title_id)
        base_unit = self.store_client.read_stored_unit(title_id)
        base_depots = set(base_unit.revisions) if base_unit else set()

        analysis = DLCAnalysis(title_id=title_id, total_extensions=len(metadata.extensions))
        for extension in metadata.extensions:
            detail = ExtensionDetail(
                extension_id=extension.extension_id,
                name=extension.name,
                decorative=extension.decorative,
                has_own_depot=extension.has_own_depot,
            )
            analysis.per_item_detail.append(detail)
            if extension.decorative:
                analysis.decorative_count += 1
                continue

            analysis.content_count += 1
            if self.store_client.has_unit(extension.extension_id):
                detail.tracked_via = TRACKED_VIA_BUNDLE
            elif base_depots.intersection(extension.depot_ids):
                detail.tracked_via = TRACKED_VIA_BASE
            detail.tracked = detail.tracked_via is not None
            if detail.tracked:
                analysis.tracked_content_count += 1

        analysis.missing_content_count = analysis.content_count - analysis.tracked_content_count
        analysis.completion_percent = completion_percent(analysis.tracked_content_count, analysis.content_count)
        logger.info(
            f"DLC analysis for {title_id}: {analysis.tracked_content_count}/{analysis.content_count} content DLC tracked "
            f"({analysis.completion_percent}%), {analysis.decorative_count} extras"
        )
        return analysis

    def analyze(self, title_id) -> DLCAnalysis:
        """Fails soft: catalog errors and budget overruns give an empty analysis with `error` set"""
        title_id = normalize_title_id(title_id)
        try:
            analysis = run_with_budget(self._analyze, self.timeout, title_id, default=None,
                                       label=f"DLC analysis {title_id}")
        except VaultException as e:
            logger.warning(f"DLC analysis for {title_id} failed: {e.message}")
            return DLCAnalysis(title_id=title_id, error=e.message)
        if analysis is None:
            return DLCAnalysis(title_id=title_id, error=f"Analysis exceeded {self.timeout}s budget")
        return analysis
