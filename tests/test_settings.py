"""
Tests for settings loading and validation
"""
import yaml

import settings as settings_module
from settings import load_settings, verify_settings, reload_conf


class TestLoadSettings:
    def test_writes_defaults_when_missing(self, tmp_path):
        config_file = tmp_path / 'config' / 'settings.yaml'
        settings = load_settings(config_file=str(config_file))

        assert config_file.exists()
        assert settings['store']['backend'] == 'directory'
        assert settings['reconciliation']['interval_hours'] == 6

    def test_merges_partial_file(self, tmp_path):
        config_file = tmp_path / 'settings.yaml'
        config_file.write_text(yaml.dump({'reconciliation': {'interval_hours': 12}}))

        settings = load_settings(config_file=str(config_file))

        assert settings['reconciliation']['interval_hours'] == 12
        assert settings['reconciliation']['on_demand_timeout'] == 15
        assert settings['dlc']['timeout'] == 5

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv('VAULT_STORE_BACKEND', 'github')
        monkeypatch.setenv('GITHUB_UPLOAD_TOKEN', 'secret')
        settings = load_settings(config_file=str(tmp_path / 'settings.yaml'))

        assert settings['store']['backend'] == 'github'
        assert settings['store']['token'] == 'secret'

    def test_reload_clears_cache(self, tmp_path, monkeypatch):
        monkeypatch.setattr(settings_module, 'CONFIG_FILE', str(tmp_path / 'settings.yaml'))
        first = reload_conf()
        assert load_settings() is first
        assert reload_conf() is not first


class TestVerifySettings:
    def test_directory_backend_is_valid(self):
        assert verify_settings('store', {'backend': 'directory'}) == (True, [])

    def test_github_backend_requires_credentials(self):
        success, errors = verify_settings('store', {'backend': 'github', 'owner': 'me'})
        assert not success
        assert {e['path'] for e in errors} == {'store/repo', 'store/token'}

    def test_unknown_backend(self):
        success, errors = verify_settings('store', {'backend': 's3'})
        assert not success
        assert errors[0]['path'] == 'store/backend'

    def test_interval_must_be_positive(self):
        assert verify_settings('reconciliation', {'interval_hours': 0})[0] is False
        assert verify_settings('reconciliation', {'interval_hours': 1})[0] is True
