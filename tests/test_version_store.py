"""
Tests for the version store backends and commit client
"""
import gc
import base64
import threading

import pytest
from unittest.mock import MagicMock, call

from bundles import Bundle, ManifestFile, Script
from exceptions import StoreWriteException, StoreReadException
from version_store import (
    DirectoryBackend,
    GitHubBranchBackend,
    StoreBackend,
    TitleLocks,
    VersionStoreClient,
    summarize_unit,
)


def _bundle(title_id='730', revision='1111111111', text=None):
    script = Script(title_id, text or f'addappid({title_id})\naddappid(7301, 1, "ABC")\nsetManifestid(7301, "{revision}", 0)\n')
    return Bundle(
        title_id=title_id,
        script=script,
        manifest_files=[ManifestFile('7301', revision, b'\x00manifest\xff')],
    )


class TestDirectoryBackend:
    def test_missing_unit(self, store_backend):
        assert store_backend.read('730') is None
        assert not store_backend.exists('730')

    def test_write_reports_creation(self, store_backend):
        assert store_backend.write('730', {'730.lua': b'a'}) is True
        assert store_backend.write('730', {'730.lua': b'b'}) is False
        assert store_backend.read('730') == {'730.lua': b'b'}

    def test_write_is_full_overwrite(self, store_backend):
        store_backend.write('730', {'730.lua': b'a', '7301_1.manifest': b'old'})
        store_backend.write('730', {'730.lua': b'a', '7301_2.manifest': b'new'})
        assert sorted(store_backend.read('730')) == ['730.lua', '7301_2.manifest']

    def test_list_keys(self, store_backend):
        store_backend.write('730', {'730.lua': b'a'})
        store_backend.write('440', {'440.lua': b'a'})
        assert store_backend.list_keys() == ['440', '730']

    def test_rejects_path_like_keys(self, store_backend):
        with pytest.raises(ValueError):
            store_backend.read('../etc')


class TestVersionStoreClient:
    def test_commit_twice_is_created_then_updated(self, store_client, fixed_now):
        bundle = _bundle()
        first = store_client.commit('730', bundle)
        stored_first = store_client.read_unit('730')
        second = store_client.commit('730', bundle)
        stored_second = store_client.read_unit('730')

        assert first.created is True
        assert second.created is False
        assert stored_first == stored_second == bundle.to_files()

    def test_retries_with_linear_backoff(self, mock_sleep):
        backend = MagicMock()
        backend.read.return_value = None
        backend.write.side_effect = [IOError('boom'), IOError('boom'), True]
        client = VersionStoreClient(backend, sleep=mock_sleep)

        result = client.commit('730', _bundle())

        assert result.created is True
        assert result.attempts == 3
        assert mock_sleep.call_args_list == [call(1.0), call(2.0)]

    def test_partial_write_keeps_created_on_retry(self, mock_sleep):
        class HalfCreatingBackend(StoreBackend):
            """Registers the unit, then fails the first upload"""

            def __init__(self):
                self.units = {}
                self.failures = 1

            def read(self, key):
                return self.units.get(key)

            def write(self, key, files):
                created = key not in self.units
                self.units[key] = {}
                if self.failures:
                    self.failures -= 1
                    raise IOError('blob upload 502')
                self.units[key] = dict(files)
                return created

            def list_keys(self):
                return sorted(self.units)

        backend = HalfCreatingBackend()
        result = VersionStoreClient(backend, sleep=mock_sleep).commit('440', _bundle('440'))

        assert result.created is True
        assert result.attempts == 2
        assert backend.units['440'] == _bundle('440').to_files()

    def test_exhaustion_raises_for_title(self, mock_sleep):
        backend = MagicMock()
        backend.read.return_value = {}
        backend.write.side_effect = IOError('remote down')
        client = VersionStoreClient(backend, sleep=mock_sleep)

        with pytest.raises(StoreWriteException) as exc:
            client.commit('730', _bundle())

        assert exc.value.title_id == '730'
        assert exc.value.attempts == 3
        assert backend.write.call_count == 3
        assert mock_sleep.call_count == 2

    def test_commit_batch_isolates_failures(self, mock_sleep):
        backend = MagicMock()
        backend.read.return_value = None

        def write(key, files):
            if key == '440':
                raise IOError('nope')
            return True

        backend.write.side_effect = write
        client = VersionStoreClient(backend, sleep=mock_sleep)

        results = client.commit_batch([_bundle('730'), _bundle('440'), _bundle('570')])

        assert [b.title_id for b, _ in results] == ['730', '440', '570']
        assert isinstance(results[1][1], StoreWriteException)
        assert results[2][1].created is True
        assert [c.args[0] for c in backend.write.call_args_list] == ['730', '440', '440', '440', '570']

    def test_stored_revisions_and_titles(self, store_client):
        store_client.commit('730', _bundle())
        assert store_client.stored_revisions('730') == {'7301': '1111111111'}
        assert store_client.stored_revisions('999') == {}
        assert store_client.list_titles() == ['730']
        assert store_client.has_unit('730')
        assert not store_client.has_unit('999')

    def test_read_failure_is_wrapped(self):
        backend = MagicMock()
        backend.read.side_effect = IOError('unreachable')
        with pytest.raises(StoreReadException):
            VersionStoreClient(backend).read_unit('730')


class TestSummarizeUnit:
    def test_revisions_from_manifest_names(self):
        unit = summarize_unit('730', {
            '730.lua': b'setManifestid(7301, "1", 0) -- unverified\n',
            '7301_1.manifest': b'a',
            'depotkeys.json': b'{}',
        })
        assert unit.script_name == '730.lua'
        assert unit.revisions == {'7301': '1'}
        assert unit.unverified == {'7301'}
        assert unit.manifest_bytes('7301') == b'a'


class TestTitleLocks:
    def test_same_title_shares_lock(self):
        locks = TitleLocks()
        assert locks.get('730') is locks.get('730')
        assert locks.get('730') is not locks.get('440')

    def test_unheld_locks_are_released(self):
        locks = TitleLocks()
        with locks.hold('730'):
            assert '730' in locks._locks
        gc.collect()
        assert '730' not in locks._locks

    def test_different_titles_do_not_block(self):
        locks = TitleLocks()
        acquired = threading.Event()

        def other_title():
            with locks.hold('440'):
                acquired.set()

        with locks.hold('730'):
            worker = threading.Thread(target=other_title)
            worker.start()
            assert acquired.wait(timeout=2)
            worker.join()


def _response(status=200, payload=None, content=b''):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload
    response.content = content
    return response


class FakeGitHub:
    """Routes session.request calls for owner/repo"""

    def __init__(self, branches):
        self.branches = dict(branches)
        self.calls = []
        self.blobs = []

    def request(self, method, url, timeout=None, **kwargs):
        path = url.split('/repos/owner/repo/', 1)[1]
        body = kwargs.get('json')
        self.calls.append((method, path))
        if method == 'GET' and path.startswith('git/ref/heads/'):
            name = path[len('git/ref/heads/'):]
            if name in self.branches:
                return _response(200, {'object': {'sha': self.branches[name]}})
            return _response(404)
        if method == 'GET' and path.startswith('git/commits/'):
            return _response(200, {'tree': {'sha': 'tree-main'}})
        if method == 'POST' and path == 'git/refs':
            self.branches[body['ref'].rsplit('/', 1)[-1]] = body['sha']
            return _response(201, {})
        if method == 'POST' and path == 'git/blobs':
            self.blobs.append(base64.b64decode(body['content']))
            return _response(201, {'sha': f'blob-{len(self.blobs)}'})
        if method == 'POST' and path == 'git/trees':
            assert body['base_tree'] == 'tree-main'
            return _response(201, {'sha': 'tree-new'})
        if method == 'POST' and path == 'git/commits':
            return _response(201, {'sha': 'commit-new'})
        if method == 'PATCH':
            assert body == {'sha': 'commit-new', 'force': True}
            return _response(200, {})
        if method == 'GET' and path == 'contents/':
            return _response(200, [
                {'type': 'file', 'name': '730.lua', 'download_url': 'https://raw/730.lua'},
                {'type': 'file', 'name': '7301_1.manifest', 'download_url': 'https://raw/7301_1.manifest'},
                {'type': 'file', 'name': 'README.md', 'download_url': 'https://raw/README.md'},
            ])
        if method == 'GET' and path == 'branches':
            if kwargs['params']['page'] == 1:
                return _response(200, [{'name': 'main'}, {'name': '730'}, {'name': '440'}])
            return _response(200, [])
        raise AssertionError(f'unexpected {method} {path}')


@pytest.fixture
def github():
    fake = FakeGitHub({'main': 'sha-main'})
    session = MagicMock()
    session.headers = {}
    session.request.side_effect = fake.request
    session.get.side_effect = lambda url, **kwargs: _response(200, content=url.rsplit('/', 1)[-1].encode())
    backend = GitHubBranchBackend('owner', 'repo', 'secret-token', session=session, sleep=MagicMock())
    return fake, session, backend


class TestGitHubBranchBackend:
    def test_requires_credentials(self):
        with pytest.raises(ValueError):
            GitHubBranchBackend('owner', 'repo', '', session=MagicMock())

    def test_write_creates_branch_from_main(self, github):
        fake, session, backend = github

        created = backend.write('730', {'730.lua': b'script', '7301_1.manifest': b'\x00\xff'})

        assert created is True
        assert fake.branches['730'] == 'sha-main'
        assert ('POST', 'git/refs') in fake.calls
        assert sorted(fake.blobs) == [b'\x00\xff', b'script']
        assert fake.calls[-1] == ('PATCH', 'git/refs/heads/730')
        assert session.headers['Authorization'] == 'token secret-token'

    def test_write_existing_branch(self, github):
        fake, _, backend = github
        fake.branches['730'] = 'sha-730'

        assert backend.write('730', {'730.lua': b'script'}) is False
        assert ('POST', 'git/refs') not in fake.calls

    def test_read_missing_branch(self, github):
        _, _, backend = github
        assert backend.read('999') is None

    def test_read_filters_store_files(self, github):
        fake, _, backend = github
        fake.branches['730'] = 'sha-730'
        assert backend.read('730') == {'730.lua': b'730.lua', '7301_1.manifest': b'7301_1.manifest'}

    def test_list_keys_excludes_default_branch(self, github):
        _, _, backend = github
        assert backend.list_keys() == ['730', '440']
