"""
Tests for the catalog client and rate limiter
"""
import pytest
import requests
from unittest.mock import MagicMock

from catalog import RateLimiter, CatalogClient, parse_depots, parse_extensions, is_decorative
from exceptions import CatalogServiceException


class FakeTime:
    def __init__(self, start=100.0):
        self.now = start
        self.sleeps = []

    def clock(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestRateLimiter:
    def test_first_call_does_not_wait(self):
        fake = FakeTime()
        limiter = RateLimiter(1.0, clock=fake.clock, sleep=fake.sleep)
        assert limiter.wait() == 0.0
        assert fake.sleeps == []

    def test_enforces_minimum_spacing(self):
        fake = FakeTime()
        limiter = RateLimiter(1.0, clock=fake.clock, sleep=fake.sleep)
        limiter.wait()
        fake.now += 0.25
        assert limiter.wait() == pytest.approx(0.75)
        limiter.wait()
        assert fake.sleeps == pytest.approx([0.75, 1.0])

    def test_no_wait_after_interval_elapsed(self):
        fake = FakeTime()
        limiter = RateLimiter(1.0, clock=fake.clock, sleep=fake.sleep)
        limiter.wait()
        fake.now += 5
        assert limiter.wait() == 0.0


STEAMCMD_PAYLOAD = {
    'status': 'success',
    'data': {
        '730': {
            'common': {'name': 'Counter-Strike 2'},
            'extended': {'listofdlc': '7401,7402'},
            'depots': {
                '7301': {'name': 'Game Content', 'manifests': {'public': {'gid': '3333333333'}},
                         'config': {'oslist': 'windows'}},
                '7302': {'manifests': {'public': {'gid': '4444444444'}}, 'depotfromapp': '228980',
                         'sharedinstall': '1'},
                '7411': {'name': 'Operation Pack', 'dlcappid': '7401',
                         'manifests': {'public': {'gid': '5555555555'}}},
                '7499': {'name': 'Soundtrack Files', 'dlcappid': '7403'},
                'branches': {'public': {'buildid': '1'}},
            },
        }
    },
}


class TestParsing:
    def test_parse_depots(self):
        depots = parse_depots(STEAMCMD_PAYLOAD['data']['730']['depots'])
        assert set(depots) == {'7301', '7302', '7411', '7499'}
        assert depots['7301'].revision_id == '3333333333'
        assert depots['7301'].platform_tag == 'windows'
        assert depots['7302'].is_shared
        assert depots['7302'].shared_from_title == '228980'
        assert depots['7499'].revision_id is None

    def test_parse_extensions(self):
        app_data = STEAMCMD_PAYLOAD['data']['730']
        extensions = parse_extensions(app_data, parse_depots(app_data['depots']))
        by_id = {e.extension_id: e for e in extensions}

        assert list(by_id) == ['7401', '7402', '7403']
        assert by_id['7401'].has_own_depot and by_id['7401'].depot_ids == ['7411']
        assert not by_id['7402'].has_own_depot
        assert by_id['7403'].decorative

    @pytest.mark.parametrize('name,expected', [
        ('Official Soundtrack', True),
        ('Digital ARTBOOK', True),
        ('Level Editor Tools', True),
        ('Expansion Pass', False),
        (None, False),
    ])
    def test_is_decorative(self, name, expected):
        assert is_decorative(name) is expected


def _response(status=200, payload=None, content=b''):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload
    response.content = content
    return response


@pytest.fixture
def limiter():
    limiter = MagicMock()
    limiter.wait.return_value = 0.0
    return limiter


@pytest.fixture
def session():
    session = MagicMock()
    session.headers = {}
    return session


class TestCatalogClient:
    def test_title_metadata(self, session, limiter):
        session.get.return_value = _response(200, STEAMCMD_PAYLOAD)
        client = CatalogClient(rate_limiter=limiter, session=session)

        metadata = client.get_title_metadata('730')

        assert metadata.name == 'Counter-Strike 2'
        assert metadata.current_revisions == {'7301': '3333333333', '7302': '4444444444', '7411': '5555555555'}
        assert len(metadata.extensions) == 3
        assert session.get.call_args[0][0] == 'https://api.steamcmd.net/v1/info/730'
        limiter.wait.assert_called_once()

    def test_unsuccessful_status_raises(self, session, limiter):
        session.get.return_value = _response(200, {'status': 'failed'})
        with pytest.raises(CatalogServiceException):
            CatalogClient(rate_limiter=limiter, session=session).get_title_metadata('730')

    def test_network_error_raises(self, session, limiter):
        session.get.side_effect = requests.ConnectionError('offline')
        with pytest.raises(CatalogServiceException):
            CatalogClient(rate_limiter=limiter, session=session).get_title_metadata('730')

    def test_http_error_raises(self, session, limiter):
        session.get.return_value = _response(503)
        with pytest.raises(CatalogServiceException):
            CatalogClient(rate_limiter=limiter, session=session).get_title_metadata('730')

    def test_title_name_from_store(self, session, limiter):
        session.get.return_value = _response(200, {'730': {'success': True, 'data': {'name': 'CS2'}}})
        assert CatalogClient(rate_limiter=limiter, session=session).get_title_name('730') == 'CS2'

    def test_title_name_never_raises(self, session, limiter):
        session.get.side_effect = requests.Timeout('slow')
        assert CatalogClient(rate_limiter=limiter, session=session).get_title_name('730') == 'Unknown Game'

    def test_fetch_manifest_without_mirror(self, session, limiter):
        client = CatalogClient(rate_limiter=limiter, session=session)
        assert client.fetch_manifest('7301', '3333333333') is None
        session.get.assert_not_called()

    def test_fetch_manifest_from_mirror(self, session, limiter):
        session.get.return_value = _response(200, content=b'\x00bytes')
        client = CatalogClient(manifest_url='https://mirror.example/manifests/', rate_limiter=limiter, session=session)
        assert client.fetch_manifest('7301', '3333333333') == b'\x00bytes'
        assert session.get.call_args[0][0] == 'https://mirror.example/manifests/7301_3333333333.manifest'

    def test_fetch_manifest_not_found(self, session, limiter):
        session.get.return_value = _response(404)
        client = CatalogClient(manifest_url='https://mirror.example', rate_limiter=limiter, session=session)
        assert client.fetch_manifest('7301', '1') is None

    def test_from_settings(self):
        settings = {
            'catalog': {'info_url': 'https://info.example/v1/info/', 'min_interval': 2.5, 'timeout': 3},
            'dlc': {'decorative_patterns': ['bonus']},
        }
        client = CatalogClient.from_settings(settings)
        assert client.info_url == 'https://info.example/v1/info'
        assert client.rate_limiter.min_interval == 2.5
        assert client.timeout == 3.0
        assert client.decorative_patterns == ['bonus']
