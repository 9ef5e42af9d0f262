import math
import time
from datetime import timedelta

from urllib3.exceptions import InvalidHeader
from urllib3.util import Retry

from flare_sdk.utils import logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Callable
    from typing import Dict
    from typing import Iterator
    from typing import Optional
    from typing import Tuple

    from flare_sdk.envelope import Envelope

    DataCategory = Optional[str]


DEFAULT_RETRY_AFTER = 60


def _parse_rate_limits(
    header: str, now: "Optional[float]" = None
) -> "Iterator[Tuple[DataCategory, float]]":
    """Parses an `X-Flare-Rate-Limits` header into (category, deadline)
    pairs. A `None` category stands for every category. Groups that cannot
    be parsed are skipped.
    """
    if now is None:
        now = time.time()

    for limit in header.split(","):
        try:
            parts = limit.strip().split(":")
            if len(parts) < 2:
                continue
            retry_after = now + math.ceil(float(parts[0]))
            categories = parts[1]
            for category in categories and categories.split(";") or (None,):
                yield category or None, retry_after
        except (LookupError, ValueError):
            continue


class RateLimiter:
    """Keeps track of the categories the server asked us not to send.

    The limiter is owned by exactly one transport worker. It is not safe to
    share between threads.
    """

    def __init__(self, clock: "Callable[[], float]" = time.time) -> None:
        self._clock = clock
        self._disabled_until: "Dict[DataCategory, float]" = {}
        self._retry = Retry()

    def _disable(self, category: "DataCategory", deadline: float) -> None:
        if deadline > self._disabled_until.get(category, 0):
            self._disabled_until[category] = deadline

    def update_from_retry_after(self, header: "Optional[str]") -> None:
        """Disables every category for the number of seconds in a
        `Retry-After` header. Both the seconds and the HTTP-date form are
        accepted; anything else falls back to 60 seconds.
        """
        now = self._clock()
        seconds = None
        if header:
            header = header.strip()
            try:
                seconds = math.ceil(float(header))
            except ValueError:
                try:
                    seconds = math.ceil(self._retry.parse_retry_after(header))
                except InvalidHeader:
                    logger.debug("Unparsable Retry-After header: %r", header)

        if seconds is None or seconds < 0:
            seconds = DEFAULT_RETRY_AFTER

        self._disable(None, now + seconds)

    def update_from_rate_limit_header(self, header: str) -> None:
        for category, deadline in _parse_rate_limits(header, now=self._clock()):
            self._disable(category, deadline)

    def update_from_429(self) -> None:
        self._disable(None, self._clock() + DEFAULT_RETRY_AFTER)

    def update_from_response(
        self, status: int, headers: "Dict[str, str]"
    ) -> None:
        """Applies the rate limit signals of an HTTP response. The dedicated
        rate limit header takes precedence over `Retry-After`, which applies
        whatever the status. A bare 429 disables everything for 60 seconds.
        """
        header = headers.get("x-flare-rate-limits")
        retry_after = headers.get("retry-after")
        if header:
            self.update_from_rate_limit_header(header)
        elif retry_after is not None:
            self.update_from_retry_after(retry_after)
        elif status == 429:
            self.update_from_429()

    def is_disabled(
        self, category: "DataCategory" = None
    ) -> "Optional[timedelta]":
        """Returns how much longer `category` is disabled, or `None` if it
        can be sent right now. Limits on "any" category (`None`) apply to
        every category.
        """
        now = self._clock()
        deadline = self._disabled_until.get(None, 0)
        if category is not None:
            deadline = max(deadline, self._disabled_until.get(category, 0))
        if deadline > now:
            return timedelta(seconds=deadline - now)
        return None

    def filter_envelope(self, envelope: "Envelope") -> "Optional[Envelope]":
        """Removes every item of a disabled category from the envelope.

        Attachments are only useful together with their event, so they are
        dropped as well once no event or transaction is left. Returns `None`
        if nothing remains to be sent.
        """
        if envelope.is_raw:
            if self.is_disabled(None) is not None:
                return None
            return envelope

        items = []
        for item in envelope.items:
            if self.is_disabled(item.data_category) is not None:
                logger.debug("Dropping %s item due to rate limits", item.data_category)
                continue
            items.append(item)

        if not any(item.type in ("event", "transaction") for item in items):
            items = [item for item in items if item.type != "attachment"]

        if not items:
            return None

        envelope.items[:] = items
        return envelope
