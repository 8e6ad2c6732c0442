# synchronizer.py

import os
import enum
import time
import logging
from dataclasses import dataclass
from datetime import datetime
from email.utils import formatdate
from typing import Optional

import requests
from urllib3.exceptions import ReadTimeoutError

import config

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8 * 1024


class SyncStatus(enum.Enum):
    UPDATED = 'updated'
    NOT_MODIFIED = 'not_modified'
    TIMED_OUT = 'timed_out'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


@dataclass(frozen=True)
class SyncOutcome:
    """Result of synchronizing one file in one pass."""
    status: SyncStatus
    local_path: str
    url: str
    size: int = 0
    status_code: Optional[int] = None
    error: Optional[str] = None


# --- HTTP Session ---
def get_http_session() -> requests.Session:
    """Create the long-lived session shared by every fetch."""
    session = requests.Session()
    session.headers.update({'User-Agent': config.USER_AGENT})
    return session


# --- Conditional Fetch ---
def if_modified_since(local_path: str) -> Optional[str]:
    """HTTP-date of the local file's last write, or None if it does not exist."""
    try:
        mtime = os.path.getmtime(local_path)
    except OSError:
        return None
    return formatdate(mtime, usegmt=True)


def is_read_timeout(error: BaseException) -> bool:
    """True if a requests error wraps urllib3's ReadTimeoutError (raised while streaming the body)."""
    seen = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, ReadTimeoutError):
            return True
        seen.add(id(error))
        wrapped = error.args[0] if error.args and isinstance(error.args[0], BaseException) else None
        error = wrapped or error.__cause__ or error.__context__
    return False


def fetch_file(session, local_path: str, url: str, timeout: float = None, cancel=None) -> SyncOutcome:
    """
    Download url into local_path unless the server reports it unchanged.

    Every failure is turned into a SyncOutcome; nothing is raised.
    """
    timeout = config.FETCH_TIMEOUT if timeout is None else timeout
    headers = {}
    since = if_modified_since(local_path)
    if since:
        headers['If-Modified-Since'] = since

    started = time.monotonic()
    try:
        resp = session.get(url, headers=headers, timeout=timeout, stream=True)
        try:
            if resp.status_code == 304:
                logger.info(f"No update for {local_path}")
                return SyncOutcome(SyncStatus.NOT_MODIFIED, local_path, url, status_code=304)

            if not 200 <= resp.status_code < 300:
                logger.error(f"Error syncing {local_path}: HTTP {resp.status_code} from {url}")
                return SyncOutcome(SyncStatus.FAILED, local_path, url,
                                   status_code=resp.status_code,
                                   error=f"HTTP {resp.status_code} {resp.reason or ''}".strip())

            body = bytearray()
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if cancel is not None and cancel.is_set():
                    logger.info(f"Download of {url} cancelled, {local_path} left untouched")
                    return SyncOutcome(SyncStatus.CANCELLED, local_path, url,
                                       status_code=resp.status_code)
                # The socket timeout applies per read; this bounds the whole download.
                if time.monotonic() - started > timeout:
                    logger.warning(f"Timeout while downloading {url} "
                                   f"(body not complete after {timeout:g}s)")
                    return SyncOutcome(SyncStatus.TIMED_OUT, local_path, url,
                                       status_code=resp.status_code, error='timeout')
                body.extend(chunk)
            status_code = resp.status_code
        finally:
            resp.close()

    except requests.Timeout:
        logger.warning(f"Timeout while downloading {url}")
        return SyncOutcome(SyncStatus.TIMED_OUT, local_path, url, error='timeout')
    except requests.ConnectionError as e:
        if is_read_timeout(e):
            logger.warning(f"Timeout while downloading {url}: {e}")
            return SyncOutcome(SyncStatus.TIMED_OUT, local_path, url, error='timeout')
        logger.error(f"Error syncing {local_path}: {e}")
        return SyncOutcome(SyncStatus.FAILED, local_path, url, error=str(e))
    except requests.RequestException as e:
        logger.error(f"Error syncing {local_path}: {e}")
        return SyncOutcome(SyncStatus.FAILED, local_path, url, error=str(e))

    try:
        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        with open(local_path, 'wb') as f:
            f.write(body)
    except OSError as e:
        logger.error(f"Failed to write {local_path}: {e}", exc_info=True)
        return SyncOutcome(SyncStatus.FAILED, local_path, url,
                           status_code=status_code, error=str(e))

    logger.info(f"Updated {local_path} ({len(body)} bytes)")
    return SyncOutcome(SyncStatus.UPDATED, local_path, url,
                       size=len(body), status_code=status_code)


# --- Main Synchronization Logic ---
def resolve_local_path(category_dir: str, filename: str) -> Optional[str]:
    """Join filename onto category_dir, or None if it would land outside it."""
    root = os.path.abspath(category_dir)
    local_path = os.path.abspath(os.path.join(root, filename))
    if local_path == root or os.path.commonpath([root, local_path]) != root:
        return None
    return local_path


def sync_all(mirror: dict, base_path: str, session=None, cancel=None, timeout: float = None) -> dict:
    """
    Run one sync pass over every category and file of the mirror spec.

    Files are synchronized one after another; a failing file never stops
    the others. Returns a dictionary with the pass statistics.
    """
    stats = {
        'total_files': 0,
        'updated': 0,
        'not_modified': 0,
        'timed_out': 0,
        'failed': 0,
        'cancelled': False,
        'bytes_written': 0,
        'start_time': datetime.now(),
        'end_time': None,
        'outcomes': []
    }

    own_session = session is None
    if own_session:
        session = get_http_session()

    logger.info("Starting synchronization...")
    try:
        for category, files in mirror.items():
            if cancel is not None and cancel.is_set():
                stats['cancelled'] = True
                break

            category_dir = os.path.join(base_path, category)
            try:
                os.makedirs(category_dir, exist_ok=True)
            except OSError as e:
                logger.error(f"Cannot create directory {category_dir}: {e}")
                for filename, url in files.items():
                    _record(stats, SyncOutcome(SyncStatus.FAILED, os.path.join(category_dir, filename),
                                               url, error=str(e)))
                continue

            for filename, url in files.items():
                if cancel is not None and cancel.is_set():
                    stats['cancelled'] = True
                    break

                local_path = resolve_local_path(category_dir, filename)
                if local_path is None:
                    logger.error(f"Refusing to write '{filename}' outside {category_dir}")
                    _record(stats, SyncOutcome(SyncStatus.FAILED, os.path.join(category_dir, filename),
                                               url, error='path escapes category directory'))
                    continue

                _record(stats, fetch_file(session, local_path, url, timeout=timeout, cancel=cancel))
                if stats['cancelled']:
                    break

            if stats['cancelled']:
                break
    finally:
        if own_session:
            session.close()
        stats['end_time'] = datetime.now()

    duration = (stats['end_time'] - stats['start_time']).total_seconds()
    if stats['cancelled']:
        logger.info(f"Synchronization cancelled after {duration:.2f} seconds")
    else:
        logger.info(f"Synchronization finished in {duration:.2f} seconds")
    logger.info(f"Summary: {stats['updated']} updated, "
                f"{stats['not_modified']} unchanged, "
                f"{stats['timed_out']} timed out, "
                f"{stats['failed']} failed "
                f"({stats['bytes_written']} bytes written)")
    return stats


def _record(stats: dict, outcome: SyncOutcome):
    # A cancelled download is not a synchronized file; it only ends the pass.
    if outcome.status is SyncStatus.CANCELLED:
        stats['cancelled'] = True
        return
    stats['total_files'] += 1
    stats['outcomes'].append(outcome)
    stats[outcome.status.value] += 1
    stats['bytes_written'] += outcome.size
