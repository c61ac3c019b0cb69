from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

from wellsync.models import AccessGrant
from wellsync.providers import LocalCalendarProvider


logger = logging.getLogger(__name__)

REMEDIATION_MESSAGES = {
    "ios": (
        "{app} needs calendar access to sync your events. "
        "Open Settings > Privacy & Security > Calendars and turn on Full Access for {app}."
    ),
    "android": (
        "{app} needs calendar access to sync your events. "
        "Open Settings > Apps > {app} > Permissions > Calendar and choose Allow."
    ),
}


def remediation_message(platform: str, app_name: str) -> str:
    template = REMEDIATION_MESSAGES.get(platform, REMEDIATION_MESSAGES["ios"])
    return template.format(app=app_name)


class PermissionGate:
    """Caches the local provider's access grant.

    A grant is remembered for the lifetime of the gate; a denial is not, so the
    next call prompts again. Exceptions and timeouts count as denial.
    """

    def __init__(
        self,
        provider: LocalCalendarProvider,
        *,
        platform: str = "ios",
        app_name: str = "WellSync",
    ) -> None:
        self.provider = provider
        self.platform = platform
        self.app_name = app_name
        self._granted = False
        self._lock = threading.Lock()

    @property
    def granted(self) -> bool:
        return self._granted

    def denial(self) -> AccessGrant:
        return AccessGrant(granted=False, message=remediation_message(self.platform, self.app_name))

    def request_access(self, timeout: float | None = None) -> AccessGrant:
        with self._lock:
            if self._granted:
                return AccessGrant(granted=True)
            try:
                granted = self._prompt(timeout)
            except FutureTimeoutError:
                logger.warning("Calendar permission prompt timed out after %ss", timeout)
                return self.denial()
            except Exception as exc:
                logger.warning("Calendar permission request failed: %s: %s", type(exc).__name__, exc)
                return self.denial()
            if not granted:
                logger.info("Calendar permission not granted")
                return self.denial()
            self._granted = True
            return AccessGrant(granted=True)

    def _prompt(self, timeout: float | None) -> bool:
        if timeout is None:
            return bool(self.provider.request_permission())
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="wellsync-permission")
        try:
            future = executor.submit(self.provider.request_permission)
            return bool(future.result(timeout=timeout))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
