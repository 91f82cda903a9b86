import threading
import time
from concurrent.futures import Future

import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from jojopay.errors import ProviderRequestError

logger = structlog.get_logger(__name__)


class ResourceLoader:
    """Load an external resource once and share it.

    Concurrent callers wait on the single in-flight load instead of starting
    their own. Transient failures are retried with exponential backoff. A
    cached value that ``is_valid`` rejects is dropped and loaded again.
    """

    def __init__(self, name, fetch, is_valid=None, attempts=3, base_delay=0.5,
                 retry_on=(ProviderRequestError,), sleep=time.sleep):
        self.name = name
        self._fetch = fetch
        self._is_valid = is_valid
        self._attempts = attempts
        self._base_delay = base_delay
        self._retry_on = retry_on
        self._sleep = sleep
        self._lock = threading.Lock()
        self._value = None
        self._pending = None
        self.load_count = 0

    @property
    def loaded(self) -> bool:
        return self._value is not None

    def load(self):
        with self._lock:
            if self._value is not None:
                if self._is_valid is None or self._is_valid(self._value):
                    return self._value
                logger.info("resource_stale", resource=self.name)
                self._value = None
            if self._pending is not None:
                pending, owner = self._pending, False
            else:
                pending, owner = Future(), True
                self._pending = pending

        if not owner:
            return pending.result()

        try:
            value = self._fetch_with_retry()
        except Exception as exc:
            with self._lock:
                self._pending = None
            pending.set_exception(exc)
            raise

        with self._lock:
            self._value = value
            self._pending = None
        pending.set_result(value)
        return value

    def reset(self):
        with self._lock:
            self._value = None

    def _fetch_with_retry(self):
        retrying = Retrying(
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(multiplier=self._base_delay, max=8),
            retry=retry_if_exception_type(self._retry_on),
            sleep=self._sleep,
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "resource_load_retry",
                resource=self.name,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()),
            ),
        )
        for attempt in retrying:
            with attempt:
                self.load_count += 1
                return self._fetch()
