"""Tests for CLI configuration module."""

import json
import pytest
from cli.config import Config, ClientSettings
from modelclient.exceptions import InvalidInputError


def test_config_creates_default_file(tmp_path):
    """Test that config file is created with defaults if missing."""
    config_path = tmp_path / '.modelctl' / 'config.json'
    config = Config(config_path)

    assert config_path.exists()

    assert config.data['server'] == 'localhost:50051'
    assert config.data['timeout'] == 10.0
    assert config.data['chunk_size'] == 65536
    assert config.data['username'] == ''
    assert config.data['schema'] is None


def test_config_loads_existing_file(tmp_path):
    """Test loading existing config file."""
    config_path = tmp_path / '.modelctl' / 'config.json'
    config_path.parent.mkdir(parents=True)

    existing_data = {
        'server': 'xos.example.org:50055',
        'username': 'admin@example.org',
    }
    with open(config_path, 'w') as f:
        json.dump(existing_data, f)

    config = Config(config_path)

    assert config.data['server'] == 'xos.example.org:50055'
    assert config.data['username'] == 'admin@example.org'

    assert config.data['timeout'] == 10.0
    assert config.data['chunk_size'] == 65536


def test_config_set_credentials(temp_config):
    """Test saving and reading back credentials."""
    temp_config.set_credentials('admin@example.org', 'letmein')

    with open(temp_config.config_path, 'r') as f:
        data = json.load(f)
    assert data['username'] == 'admin@example.org'
    assert data['password'] == 'letmein'


def test_config_handles_corrupted_file(tmp_path):
    """Test that corrupted config file is backed up and defaults used."""
    config_path = tmp_path / '.modelctl' / 'config.json'
    config_path.parent.mkdir(parents=True)

    with open(config_path, 'w') as f:
        f.write('{ invalid json }')

    config = Config(config_path)

    assert config.data['server'] == 'localhost:50051'

    backup_path = config_path.with_suffix('.json.bak')
    assert backup_path.exists()
    assert backup_path.read_text() == '{ invalid json }'


def test_config_rejects_non_object_root(tmp_path):
    """Test that a JSON list is treated as corruption."""
    config_path = tmp_path / 'config.json'
    config_path.write_text('[1, 2]')

    config = Config(config_path)

    assert config.data['server'] == 'localhost:50051'
    assert config_path.with_suffix('.json.bak').exists()


def test_environment_overrides(temp_config, monkeypatch):
    """Test that MODELCTL_* variables win over the file."""
    temp_config.set_credentials('file-user', 'file-pass')
    monkeypatch.setenv('MODELCTL_SERVER', 'other:1234')
    monkeypatch.setenv('MODELCTL_USERNAME', 'env-user')
    monkeypatch.setenv('MODELCTL_SCHEMA', '/tmp/schema.json')

    settings = temp_config.to_settings()

    assert temp_config.get_server() == 'other:1234'
    assert temp_config.get_schema_path() == '/tmp/schema.json'
    assert settings.username == 'env-user'
    assert settings.password == 'file-pass'


def test_to_settings_requires_credentials(temp_config):
    """Test that missing credentials are reported as invalid input."""
    with pytest.raises(InvalidInputError) as exc_info:
        temp_config.to_settings()

    assert 'username' in str(exc_info.value)
    assert 'password' in str(exc_info.value)


def test_to_settings_rejects_non_positive_values(temp_config):
    """Test timeout and chunk size validation."""
    temp_config.set_credentials('admin', 'pw')
    temp_config.data['timeout'] = 0
    temp_config.data['chunk_size'] = -1

    with pytest.raises(InvalidInputError) as exc_info:
        temp_config.to_settings()

    assert 'timeout' in str(exc_info.value)
    assert 'chunk_size' in str(exc_info.value)


def test_client_settings_model():
    """Test the pydantic settings model directly."""
    settings = ClientSettings(server='h:1', username='u', password='p')
    assert settings.timeout == 10.0
    assert settings.schema_path is None


def test_session_from_config(temp_config):
    """Test building an immutable session context."""
    temp_config.set_credentials('admin@example.org', 'letmein')
    temp_config.data['chunk_size'] = 1024

    session = temp_config.session(assume_yes=True)

    assert session.server == 'localhost:50051'
    assert session.username == 'admin@example.org'
    assert session.chunk_size == 1024
    assert session.assume_yes
    assert 'letmein' not in repr(session)
