"""
Shared fixtures: an in-memory S3 client and a small site folder.
"""

import threading

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from aws import AwsCreds
from site_sync import SyncTarget


class _FakeListPaginator:
    def __init__(self, client):
        self._client = client

    def paginate(self, Bucket):
        self._client._record('list_objects_v2')
        self._client._maybe_fail('list_objects_v2')
        keys = sorted(self._client.objects)
        size = self._client.page_size
        if not keys:
            # S3 returns one page without Contents for an empty bucket
            yield {'KeyCount': 0, 'IsTruncated': False}
            return
        for start in range(0, len(keys), size):
            chunk = keys[start:start + size]
            yield {
                'Contents': [{'Key': key} for key in chunk],
                'KeyCount': len(chunk),
                'IsTruncated': start + size < len(keys),
            }


class FakeS3Client:
    """
    Just enough of the boto3 S3 client for the sync: list_objects_v2 paginator,
    delete_objects and put_object against a dict of key -> params.
    """

    def __init__(self, objects=None, page_size=1000):
        self.objects = {key: {'Body': b''} for key in (objects or [])}
        self.page_size = page_size
        self.calls = []
        self.failures = {}
        self.failing_keys = set()
        self._lock = threading.Lock()

    def _record(self, operation):
        with self._lock:
            self.calls.append(operation)

    def _maybe_fail(self, operation):
        if operation in self.failures:
            raise self.failures[operation]

    def get_paginator(self, name):
        assert name == 'list_objects_v2'
        return _FakeListPaginator(self)

    def delete_objects(self, Bucket, Delete):
        self._record('delete_objects')
        self._maybe_fail('delete_objects')
        deleted = []
        with self._lock:
            for obj in Delete['Objects']:
                self.objects.pop(obj['Key'], None)
                deleted.append({'Key': obj['Key']})
        return {'Deleted': deleted}

    def put_object(self, **params):
        self._record('put_object')
        self._maybe_fail('put_object')
        if params['Key'] in self.failing_keys:
            raise ClientError({'Error': {'Code': 'AccessDenied', 'Message': 'Access Denied'}}, 'PutObject')
        with self._lock:
            self.objects[params['Key']] = params
        return {'ETag': '"etag"'}


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def network_error():
    return EndpointConnectionError(endpoint_url="https://my-site.s3.us-east-1.amazonaws.com/")


@pytest.fixture
def site_dir(tmp_path):
    """A distribution folder holding index.html and css/app.css."""
    root = tmp_path / "dist"
    (root / "css").mkdir(parents=True)
    (root / "index.html").write_text("<html><body>hello</body></html>")
    (root / "css" / "app.css").write_text("body { color: red; }")
    return root


@pytest.fixture
def target(site_dir):
    return SyncTarget(
        bucket_name="my-site",
        local_root=str(site_dir),
        region="us-east-1",
        stage="dev",
        creds=AwsCreds("AKIDEXAMPLE", "secret", None, "us-east-1"),
        max_workers=4,
    )
