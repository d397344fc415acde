"""Shared pytest fixtures for all tests."""

import pytest

from cli.config import Config
from modelclient.models import ModelResourceClient
from modelclient.schema import SchemaCatalog, StaticSchemaSource
from modelclient.session import SessionContext
from fakes import SCHEMA_DOCUMENT, FakeModelServer


@pytest.fixture
def temp_config_dir(tmp_path):
    """
    Create temporary config directory.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to temporary .modelctl directory
    """
    config_dir = tmp_path / '.modelctl'
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def temp_config(temp_config_dir, monkeypatch):
    """
    Create temporary config instance with no environment overrides.

    Args:
        temp_config_dir: Temporary config directory fixture
        monkeypatch: pytest monkeypatch fixture

    Returns:
        Config instance with temp config file
    """
    for name in ('MODELCTL_SERVER', 'MODELCTL_USERNAME', 'MODELCTL_PASSWORD', 'MODELCTL_SCHEMA'):
        monkeypatch.delenv(name, raising=False)
    return Config(temp_config_dir / 'config.json')


@pytest.fixture
def schema_source():
    """Schema with Slice, BackupOperation and BackupFile models plus file transfer and utility services."""
    return StaticSchemaSource(SCHEMA_DOCUMENT)


@pytest.fixture
def catalog(schema_source):
    return SchemaCatalog(schema_source)


@pytest.fixture
def session():
    """
    Session with test credentials and prompts enabled.

    Returns:
        SessionContext
    """
    return SessionContext(
        server='localhost:50051',
        username='admin@example.org',
        password='letmein',
        timeout=5.0,
    )


@pytest.fixture
def server():
    return FakeModelServer()


@pytest.fixture
def channel(server):
    return server.channel()


@pytest.fixture
def client(session, catalog, channel, server):
    """
    Model client connected to the fake server.

    Args:
        session: Session fixture
        catalog: Catalog fixture
        channel: Initial fake channel
        server: Fake server, also used to reconnect

    Returns:
        ModelResourceClient
    """
    return ModelResourceClient(session, catalog, channel=channel, connect=server.connect)


@pytest.fixture
def sample_file(tmp_path):
    """
    Create a sample file for testing uploads.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to sample binary file
    """
    file_path = tmp_path / 'backup.tar'
    file_path.write_bytes(b'Sample content for testing backups')
    return file_path
