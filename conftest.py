"""
Pytest configuration and test fixtures for the mirror synchronizer
"""
import pytest
import os
import json
import time
import tempfile
import shutil
from email.utils import parsedate_to_datetime
from unittest.mock import patch

import requests
from urllib3.exceptions import ReadTimeoutError


class FakeResponse:
    """Minimal stand-in for a streamed requests.Response"""

    def __init__(self, status_code, body=b'', reason='', stall=False):
        self.status_code = status_code
        self.body = body
        self.reason = reason
        self.stall = stall
        self.closed = False

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]
        if self.stall:
            # What requests raises when the socket read times out mid-body
            raise requests.ConnectionError(ReadTimeoutError(None, None, "Read timed out."))

    def close(self):
        self.closed = True


class FakeHTTPSession:
    """In-memory remote host that honours If-Modified-Since"""

    def __init__(self):
        self.files = {}
        self.errors = {}
        self.requests = []
        self.closed = False

    def serve(self, url, body, last_modified=None):
        if last_modified is None:
            last_modified = time.time() - 3600
        self.files[url] = (body, last_modified)

    def stall(self, url, partial_body):
        """Send the headers and part of the body, then stop responding"""
        self.errors[url] = FakeResponse(200, partial_body, reason='OK', stall=True)

    def fail(self, url, error):
        """error is either an HTTP status code or an exception to raise"""
        self.errors[url] = error

    def get(self, url, headers=None, timeout=None, stream=False):
        headers = dict(headers or {})
        self.requests.append((url, headers))

        error = self.errors.get(url)
        if isinstance(error, Exception):
            raise error
        if isinstance(error, FakeResponse):
            return error
        if error is not None:
            return FakeResponse(error, b'error page', reason='Server Error')

        if url not in self.files:
            return FakeResponse(404, b'not found', reason='Not Found')

        body, last_modified = self.files[url]
        since = headers.get('If-Modified-Since')
        if since and parsedate_to_datetime(since).timestamp() >= int(last_modified):
            return FakeResponse(304, reason='Not Modified')
        return FakeResponse(200, body, reason='OK')

    def urls_requested(self):
        return [url for url, _ in self.requests]

    def close(self):
        self.closed = True


@pytest.fixture
def temp_directory():
    """Create a temporary directory for testing"""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir)


@pytest.fixture
def fake_session():
    """A fake HTTP session backed by an in-memory host"""
    return FakeHTTPSession()


@pytest.fixture
def sample_mirror():
    """Mirror specification with two categories"""
    return {
        'images': {
            'logo.png': 'https://x/logo.png',
            'banner.jpg': 'https://x/banner.jpg',
        },
        'docs': {
            'readme.txt': 'https://y/readme.txt',
        },
    }


@pytest.fixture
def refused_error():
    """The error requests raises when the remote host refuses the connection"""
    return requests.ConnectionError("[Errno 111] Connection refused")


@pytest.fixture
def mirror_config_file(temp_directory):
    """Write a mirror configuration file and return its path"""
    path = os.path.join(temp_directory, 'mirror.json')
    with open(path, 'w', encoding='utf-8') as f:
        json.dump({
            'sync': {'schedule': ['0 * * * *', '30 2 * * 1']},
            'mirror': {
                'base_path': 'mirror',
                'data': {'images': {'logo.png': 'https://x/logo.png'}},
            },
        }, f)
    return path


@pytest.fixture
def mock_env_vars():
    """Clear the environment overrides read by config"""
    with patch('config.SYNC_SCHEDULE', None), patch('config.MIRROR_BASE_PATH', None):
        yield
