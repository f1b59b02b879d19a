"""
Shared pytest fixtures for brbackup tests.

This module provides fixtures for:
- Flask app and CLI runner
- Backup settings files
- An in-memory object store with controllable last-modified times
- A fake database engine recording dump/restore/clone calls
- Mock S3 via moto
"""

import gzip
import io
from datetime import datetime, timedelta, timezone

import pytest
import boto3
import yaml
from moto import mock_aws

from brbackup import create_app
from brbackup.backup.executor import Backups
from brbackup.backup.storage import BackupObject, StoreInconsistency
from brbackup.config import BackupSettings


BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    """Timestamp a number of minutes after BASE_TIME."""
    return BASE_TIME + timedelta(minutes=minutes)


class FakeStorage:
    """
    In-memory object store.

    Objects keep the last-modified time they were added with, so ordering
    tests do not depend on the wall clock.
    """

    def __init__(self):
        self.objects = {}
        self.deleted = []
        self.bucket_checks = 0
        self.missing_on_delete = set()
        self.clock = BASE_TIME

    def add(self, key, last_modified, body=b''):
        self.objects[key] = (body, last_modified)

    def ensure_bucket(self):
        self.bucket_checks += 1
        return False

    def upload(self, local_path, key, acl='private'):
        with open(local_path, 'rb') as f:
            body = f.read()
        self.clock += timedelta(seconds=1)
        self.add(key, self.clock, body)
        return key

    def list_objects(self, prefix):
        return [
            BackupObject(key=key, last_modified=last_modified, size=len(body))
            for key, (body, last_modified) in self.objects.items()
            if key.startswith(prefix)
        ]

    def get(self, key, chunk_size=4):
        body, _ = self.objects[key]
        for start in range(0, len(body), chunk_size):
            yield body[start:start + chunk_size]

    def delete(self, key):
        if key in self.missing_on_delete:
            raise StoreInconsistency(f"already gone: {key}")
        self.objects.pop(key, None)
        self.deleted.append(key)


class FakeEngine:
    """Engine adapter that records calls instead of running database tools."""

    name = 'fake'

    def __init__(self, settings=None):
        self.settings = settings
        self.dumped = []
        self.restored = []
        self.cloned = []

    def dump(self, database, fileobj):
        self.dumped.append(database)
        with gzip.GzipFile(fileobj=fileobj, mode='wb') as gz:
            gz.write(f"-- dump of {database}\n".encode())

    def restore(self, database, fileobj):
        self.restored.append((database, fileobj.read()))

    def clone(self, target, fileobj):
        self.cloned.append((target, fileobj.read()))


def gzipped(text: str) -> bytes:
    buffer = io.BytesIO()
    with gzip.GzipFile(fileobj=buffer, mode='wb') as gz:
        gz.write(text.encode())
    return buffer.getvalue()


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.
    """
    app = create_app('testing')

    app.config.update({
        'TEMP_DIR': str(tmp_path / 'tmp'),
        'DOWNLOAD_DIR': str(tmp_path / 'downloads'),
    })
    (tmp_path / 'downloads').mkdir(exist_ok=True)

    yield app


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def settings():
    """Backup settings tracking two databases with keep=2."""
    return BackupSettings(
        aws_secret_id='test_access_key_123',
        aws_secret_key='test_secret_key_456',
        databases=['app_production', 'stats_production'],
        keep=2,
        env='prod_br',
        dbuser='root',
        bucket='test-bucket'
    )


@pytest.fixture
def settings_file(tmp_path):
    """
    Write a backup settings file and return its path.
    """
    path = tmp_path / 'backups.yml'
    path.write_text(yaml.safe_dump({
        'aws_secret_id': 'test_access_key_123',
        'aws_secret_key': 'test_secret_key_456',
        'bucket': 'test-bucket',
        'databases': ['app_production', 'stats_production'],
        'keep': 2,
        'env': 'prod_br',
        'dbuser': 'root',
        'dbpass': 'secret',
    }))
    return path


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def backups(settings, fake_storage, fake_engine, tmp_path):
    """Backups executor wired to the in-memory store and fake engine."""
    downloads = tmp_path / 'downloads'
    downloads.mkdir(exist_ok=True)
    return Backups(
        settings=settings,
        storage=fake_storage,
        engine=fake_engine,
        environment='prod_br',
        temp_dir=str(tmp_path / 'tmp'),
        download_dir=str(downloads)
    )


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(name='at')
def at_fixture():
    """Function mapping minutes after BASE_TIME to a timestamp."""
    return at


@pytest.fixture
def fake_engine_class():
    return FakeEngine


@pytest.fixture(name='gzipped')
def gzipped_fixture():
    """Function gzip-compressing a string."""
    return gzipped
