"""
Failure Notifier - operator alerts for persistent sync failures

Counts consecutive failed jobs across runs and raises an alert once the
count reaches the threshold, at most once per cooldown window. Circuit
breaker openings (global or per module) are alerted immediately.

Alerts are logged at WARNING under the ``erpsync.alerts`` logger (routed by
the deployment's log shipping) and passed to an optional ``send`` callable
for a direct channel such as email or chat.
"""

import logging
import time
from typing import Callable, Optional

from ..config import Settings, get_settings
from .state_store import StateStore

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("erpsync.alerts")

STATE_KEY = "failure_notifier"

AlertSender = Callable[[str, str], None]


class FailureNotifier:
    """
    Tracks consecutive failures and alerts operators.

    Counter and last alert time are persisted in the state store so the
    cooldown holds across worker processes.
    """

    def __init__(
        self,
        state_store: StateStore,
        settings: Optional[Settings] = None,
        send: Optional[AlertSender] = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = settings or get_settings()
        self.state_store = state_store
        self.threshold = settings.FAILURE_NOTIFY_THRESHOLD
        self.cooldown = settings.FAILURE_NOTIFY_COOLDOWN
        self._send = send
        self._clock = clock

    def check(self, successes: int, failures: int) -> bool:
        """
        Feed the totals of one run.

        Any success resets the consecutive counter. A run with only
        failures adds them to the counter and alerts when the threshold is
        reached and the cooldown has elapsed.

        Returns:
            True if an alert was sent
        """
        state = self.state_store.get(STATE_KEY, {}) or {}
        consecutive = int(state.get("consecutive", 0))

        if successes > 0:
            if consecutive > 0:
                state["consecutive"] = 0
                self.state_store.set(STATE_KEY, state)
            return False

        if failures <= 0:
            return False

        consecutive += failures
        state["consecutive"] = consecutive

        sent = False
        if consecutive >= self.threshold:
            now = self._clock()
            last_sent = float(state.get("last_notified_at", 0) or 0)
            if now - last_sent >= self.cooldown:
                self._alert(
                    f"{consecutive} consecutive sync failures",
                    f"The sync queue has encountered {consecutive} consecutive failures. "
                    f"Check dead and failed jobs in the sync queue.",
                    count=consecutive,
                )
                state["last_notified_at"] = now
                sent = True

        self.state_store.set(STATE_KEY, state)
        return sent

    def notify_circuit_breaker_open(self, failures: int) -> None:
        """Alert that the global circuit breaker has paused all syncing."""
        self._alert(
            "Sync paused: remote system unreachable",
            f"{failures} consecutive batches failed and the sync queue is paused. "
            f"It will be retried after the recovery delay.",
            count=failures,
        )

    def notify_module_circuit_open(self, module: str, failures: int) -> None:
        """Alert that a module's circuit breaker has opened."""
        self._alert(
            f"Sync paused for module '{module}'",
            f"Module '{module}' failed {failures} consecutive batches and is paused. "
            f"It will be retried after the recovery delay.",
            sync_module=module,
            count=failures,
        )

    def get_consecutive_failures(self) -> int:
        state = self.state_store.get(STATE_KEY, {}) or {}
        return int(state.get("consecutive", 0))

    def _alert(self, subject: str, message: str, **context) -> None:
        alert_logger.warning(subject, extra=context)
        if self._send is None:
            return
        try:
            self._send(subject, message)
        except Exception as e:
            logger.error(
                f"Failed to deliver sync failure alert: {e}",
                exc_info=True,
                extra=context
            )
