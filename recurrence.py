# recurrence.py

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, List, Optional

from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)


class ScheduleParseError(ValueError):
    """Raised when a cron expression cannot be parsed."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid schedule '{expression}': {reason}")


@dataclass(frozen=True)
class RecurrenceRule:
    """A parsed crontab expression that can report its next occurrence."""
    expression: str
    trigger: CronTrigger = field(repr=False, compare=False)
    timezone: Optional[Any] = None

    def next_after(self, moment: datetime, timezone=None) -> Optional[datetime]:
        """
        Return the first occurrence strictly after ``moment``.

        ``moment`` must be timezone-aware. The result is expressed in the
        rule's timezone, or in ``timezone`` when one is given. Returns None
        when the rule has no further occurrence.
        """
        trigger = self.trigger
        if timezone is not None and timezone != self.timezone:
            trigger = CronTrigger.from_crontab(self.expression, timezone=timezone)

        # CronTrigger rounds up to the whole second, so one microsecond past
        # ``moment`` excludes ``moment`` itself.
        try:
            return trigger.get_next_fire_time(None, moment + timedelta(microseconds=1))
        except (OverflowError, ValueError) as e:
            logger.warning(f"Schedule '{self.expression}' has no next occurrence: {e}")
            return None


def parse_rule(expression: str, timezone=None) -> RecurrenceRule:
    """Parse a five-field crontab expression."""
    if not isinstance(expression, str) or not expression.strip():
        raise ScheduleParseError(str(expression), "empty expression")

    expression = ' '.join(expression.split())
    try:
        trigger = CronTrigger.from_crontab(expression, timezone=timezone)
    except (ValueError, TypeError, LookupError) as e:
        raise ScheduleParseError(expression, str(e)) from e
    return RecurrenceRule(expression, trigger, timezone)


def parse_rules(expressions: List[str], timezone=None) -> List[RecurrenceRule]:
    """Parse every expression in order; the first invalid one raises."""
    return [parse_rule(expression, timezone) for expression in expressions]
