# scheduler.py

import sys
import math
import signal
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, List

import config
from recurrence import RecurrenceRule, ScheduleParseError, parse_rules
from synchronizer import get_http_session, sync_all

logger = logging.getLogger(__name__)

# Largest single timer delay most platforms accept (2^31 - 1 ms, about 24.8 days).
MAX_SLEEP_CHUNK = timedelta(milliseconds=2**31 - 1)
FALLBACK_INTERVAL = timedelta(hours=config.FALLBACK_INTERVAL_HOURS)
MIN_DELAY = timedelta(minutes=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_delay(delay: timedelta) -> str:
    """Render a delay as d.hh:mm:ss."""
    total = max(0, int(math.ceil(delay.total_seconds())))
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{days}.{hours:02d}:{minutes:02d}:{seconds:02d}"


# --- Long Sleep ---
def wait_until(until: datetime, cancel: threading.Event, clock: Callable[[], datetime] = utcnow,
               max_chunk: timedelta = MAX_SLEEP_CHUNK) -> bool:
    """
    Sleep until the given time, in chunks no longer than max_chunk.

    Returns True once the time is reached, False as soon as cancel is set.
    """
    remaining = until - clock()
    if remaining <= timedelta(0):
        return not cancel.is_set()

    while remaining > timedelta(0):
        if cancel.is_set():
            logger.info("Delay cancelled.")
            return False

        chunk = min(remaining, max_chunk)
        if chunk > MIN_DELAY:
            rounded = timedelta(minutes=math.ceil(chunk.total_seconds() / 60))
            logger.info(f"Waiting {format_delay(rounded)[:-3]} until next run...")

        if cancel.wait(chunk.total_seconds()):
            logger.info("Delay cancelled.")
            return False

        remaining = until - clock()

    return not cancel.is_set()


# --- Scheduling Logic ---
def compute_next_run(rules: List[RecurrenceRule], now: datetime, tz=None,
                     fallback: timedelta = FALLBACK_INTERVAL) -> datetime:
    """Earliest next occurrence across all rules, never earlier than now."""
    candidates = []
    for rule in rules:
        next_time = rule.next_after(now, tz)
        if next_time is not None:
            candidates.append(next_time)

    if candidates:
        next_run = min(candidates)
    else:
        logger.warning(f"No schedule yields a future run, re-checking in {format_delay(fallback)}")
        next_run = now + fallback

    if next_run < now:
        next_run = now + MIN_DELAY
    return next_run


def find_idle_rules(rules: List[RecurrenceRule], now: datetime, tz=None) -> List[RecurrenceRule]:
    """Rules that never fire again after now."""
    return [rule for rule in rules if rule.next_after(now, tz) is None]


def run_scheduler(rules: List[RecurrenceRule], on_tick: Callable[[], object], cancel: threading.Event,
                  tz=None, clock: Callable[[], datetime] = utcnow,
                  fallback: timedelta = FALLBACK_INTERVAL, max_chunk: timedelta = MAX_SLEEP_CHUNK):
    """Wait for each scheduled time and run on_tick, until cancel is set."""
    logger.info(f"Sync scheduler started with {len(rules)} cron rules")

    while not cancel.is_set():
        now = clock()
        next_run = compute_next_run(rules, now, tz, fallback)
        logger.info(f"Next sync in {format_delay(next_run - now)} at "
                    f"{next_run.astimezone().strftime('%Y-%m-%d %H:%M:%S %z')}")

        if not wait_until(next_run, cancel, clock, max_chunk):
            break
        on_tick()

    logger.info("Sync scheduler stopped.")


def install_signal_handlers(cancel: threading.Event):
    """Set cancel on SIGINT/SIGTERM."""
    def shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        cancel.set()

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    config.setup_logging()

    try:
        settings = config.load_mirror_config()
    except (OSError, ValueError) as e:
        logger.critical(f"Cannot load mirror configuration: {e}")
        return 1

    try:
        rules = parse_rules(settings['schedule'], config.SYNC_TIMEZONE)
    except ScheduleParseError as e:
        logger.critical(str(e))
        return 1

    for rule in find_idle_rules(rules, utcnow()):
        logger.warning(f"Schedule '{rule.expression}' has no future occurrence and will never trigger")

    logger.info(f"Mirror directory: {settings['base_path']}")
    cancel = threading.Event()
    install_signal_handlers(cancel)
    session = get_http_session()

    def job():
        sync_all(settings['data'], settings['base_path'], session=session, cancel=cancel)

    try:
        if '--once' in argv:
            job()
        else:
            run_scheduler(rules, job, cancel)
    finally:
        session.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
