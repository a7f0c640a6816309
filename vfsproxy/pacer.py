"""
Bounded exponential backoff for upstream calls.

One Pacer is shared by every call a backend makes. Calls reserve a start slot
under the pacer lock, so while the upstream is failing every caller slows
down together instead of each one hammering it on its own schedule. Only the
slot bookkeeping happens under the lock; the sleeping and the network I/O do
not.
"""

import logging
import threading
import time
from typing import Callable, Optional

import requests

from vfsproxy.errors import UpstreamTransientError

LOG = logging.getLogger(__name__)

RETRY_STATUS_CODES = frozenset((
    429,  # Too Many Requests
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
    509,  # Bandwidth Limit Exceeded
))

RETRY_EXCEPTIONS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


def should_retry(response: Optional[requests.Response], error: Optional[BaseException]) -> bool:
    """Transport errors and throttling/5xx statuses are worth another attempt."""
    if error is not None:
        return isinstance(error, RETRY_EXCEPTIONS)
    if response is None:
        return False
    return response.status_code in RETRY_STATUS_CODES


class Pacer:
    def __init__(
        self,
        min_sleep: float = 0.01,
        max_sleep: float = 2.0,
        decay_constant: int = 2,
        attack_constant: int = 1,
        retries: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_sleep = max(0.0, float(min_sleep))
        self.max_sleep = max(self.min_sleep, float(max_sleep))
        self.decay_constant = max(0, int(decay_constant))
        self.attack_constant = max(0, int(attack_constant))
        self.retries = max(1, int(retries))
        self._sleep = sleep

        self._lock = threading.Lock()
        self._sleep_time = self.min_sleep
        self._consecutive_retries = 0
        self._next_slot = 0.0

    @property
    def sleep_time(self) -> float:
        return self._sleep_time

    def _begin_call(self) -> None:
        with self._lock:
            now = time.monotonic()
            start = max(now, self._next_slot)
            self._next_slot = start + self._sleep_time
        wait = start - now
        if wait > 0:
            self._sleep(wait)

    def _end_call(self, retry: bool) -> None:
        with self._lock:
            if retry:
                self._consecutive_retries += 1
                if self.attack_constant == 0:
                    sleep_time = self.max_sleep
                else:
                    factor = 1 << self.attack_constant
                    sleep_time = max(self._sleep_time, self.min_sleep, 0.001) * factor / (factor - 1)
                self._sleep_time = min(sleep_time, self.max_sleep)
            else:
                self._consecutive_retries = 0
                factor = 1 << self.decay_constant
                sleep_time = self._sleep_time * (factor - 1) / factor
                self._sleep_time = max(sleep_time, self.min_sleep)

    def call(
        self,
        fn: Callable[[], requests.Response],
        retry_if: Callable[[Optional[requests.Response], Optional[BaseException]], bool] = should_retry,
    ) -> requests.Response:
        """Run ``fn`` until ``retry_if`` says stop or the attempt bound is hit.

        Non-retryable exceptions propagate unchanged; a non-retryable response
        is returned whatever its status. When the bound is hit the last
        failure is raised as UpstreamTransientError.
        """
        response = None
        error = None
        for attempt in range(1, self.retries + 1):
            self._begin_call()
            response, error = None, None
            try:
                response = fn()
            except requests.exceptions.RequestException as e:
                error = e
            retry = retry_if(response, error)
            self._end_call(retry)
            if not retry:
                if error is not None:
                    raise error
                return response

            if response is not None:
                detail = f"status {response.status_code}"
                if attempt < self.retries:
                    response.close()
            else:
                detail = str(error)
            LOG.debug("Retrying upstream call (%d/%d) after %s, sleep %.3fs", attempt, self.retries, detail, self._sleep_time)

        if response is not None:
            status = response.status_code
            response.close()
            raise UpstreamTransientError(f"upstream status {status} after {self.retries} attempts", status_code=status)
        raise UpstreamTransientError(f"upstream unreachable after {self.retries} attempts: {error}") from error
