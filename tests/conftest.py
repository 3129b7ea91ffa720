"""
Pytest fixtures and configuration for ManifestVault tests
"""
import io
import os
import sys
import zipfile
from datetime import datetime, timezone

import pytest
from unittest.mock import MagicMock

# Add app directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'app'))

from catalog import TitleMetadata, Extension  # noqa: E402
from exceptions import CatalogServiceException  # noqa: E402

FIXED_NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
FIXED_EPOCH = 1768478400.0


class FakeCatalog:
    """In-memory catalog; unknown titles behave like an unavailable service"""

    def __init__(self):
        self.names = {}
        self.metadata = {}
        self.manifests = {}
        self.metadata_calls = []

    def add_title(self, title_id, name, current_revisions=None, extensions=None):
        self.names[title_id] = name
        self.metadata[title_id] = TitleMetadata(
            title_id=title_id,
            name=name,
            extensions=extensions or [],
            current_revisions=current_revisions or {},
        )

    def get_title_name(self, title_id):
        return self.names.get(title_id, 'Unknown Game')

    def get_title_metadata(self, title_id):
        self.metadata_calls.append(title_id)
        if title_id not in self.metadata:
            raise CatalogServiceException(f"Catalog has no data for {title_id}", title_id=title_id)
        return self.metadata[title_id]

    def fetch_manifest(self, depot_id, revision_id):
        return self.manifests.get((depot_id, revision_id))


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def fake_clock():
    return lambda: FIXED_EPOCH


@pytest.fixture
def fake_catalog():
    return FakeCatalog()


@pytest.fixture
def make_zip():
    """Build archive bytes from a name -> bytes/str mapping"""
    def _make_zip(files):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, 'w') as zf:
            for name, content in files.items():
                if isinstance(content, str):
                    content = content.encode('utf-8')
                zf.writestr(name, content)
        return buffer.getvalue()
    return _make_zip


@pytest.fixture
def key_table(tmp_path):
    from key_table import JsonKeyValueStore, KeyTable
    return KeyTable(JsonKeyValueStore(str(tmp_path / 'keys' / 'depotkeys.json')))


@pytest.fixture
def build_versions(tmp_path):
    from key_table import JsonKeyValueStore, BuildVersionLedger
    return BuildVersionLedger(JsonKeyValueStore(str(tmp_path / 'keys' / 'game_versions.json')))


@pytest.fixture
def store_backend(tmp_path):
    from version_store import DirectoryBackend
    return DirectoryBackend(str(tmp_path / 'store'))


@pytest.fixture
def mock_sleep():
    return MagicMock()


@pytest.fixture
def store_client(store_backend, mock_sleep):
    from version_store import VersionStoreClient
    return VersionStoreClient(store_backend, sleep=mock_sleep)


@pytest.fixture
def assembler(key_table, fake_catalog, fake_clock):
    from assembler import BundleAssembler
    from key_table import KeyResolver
    return BundleAssembler(KeyResolver(key_table), catalog=fake_catalog, clock=fake_clock, now=lambda: FIXED_NOW)


@pytest.fixture
def sample_730_script():
    """Script declaring a keyed depot 7301 and a keyless depot 7302"""
    return (
        '-- Counter-Strike\n'
        'addappid(730)\n'
        'addappid(7301, 1, "ABC")\n'
        'addappid(7302)\n'
        'setManifestid(7301, "1111111111", 0)\n'
        'setManifestid(7302, "2222222222", 0)\n'
    )


@pytest.fixture
def sample_extensions():
    """Five extensions: three content-bearing, two decorative"""
    return [
        Extension('7401', 'Operation Pack', has_own_depot=True, depot_ids=['7411']),
        Extension('7402', 'Weapon Case'),
        Extension('7403', 'Map Pack', has_own_depot=True, depot_ids=['7413']),
        Extension('7404', 'Official Soundtrack', decorative=True),
        Extension('7405', 'Digital Artbook', decorative=True),
    ]
