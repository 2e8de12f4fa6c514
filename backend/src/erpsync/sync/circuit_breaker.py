"""
Circuit Breakers - health gates for the sync engine

CircuitBreaker is the global gate: it opens when whole pages fail, which
means the remote system is unreachable, and stops every run from claiming
jobs until the recovery delay has passed.

ModuleCircuitBreaker tracks consecutive unhealthy batches per module so a
broken integration (remote model removed, access rights revoked, field
mapping broken) stops burning attempts while healthy modules keep syncing.

State machine (global, and per module):

    CLOSED --(N consecutive batches with failure ratio >= R)--> OPEN
    OPEN --(recovery delay elapsed)--> HALF-OPEN (available, next batch is a trial)
    HALF-OPEN --healthy batch--> CLOSED (state deleted)
    HALF-OPEN --unhealthy batch--> OPEN (opened_at reset to now)

The global breaker lets a single trial batch through while half-open. Each
breaker persists its state as one JSON blob in the state store and rewrites
it on every transition.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set

from ..config import Settings, get_settings
from .state_store import StateStore

logger = logging.getLogger(__name__)

STATE_KEY = "module_circuit_states"
GLOBAL_STATE_KEY = "circuit_breaker"

# Seconds a half-open trial stays claimed without a recorded outcome
TRIAL_TTL = 360


@dataclass
class CircuitState:
    """Failure counter and open time (epoch seconds, 0 while closed)."""
    failures: int = 0
    opened_at: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.opened_at > 0

    def to_dict(self) -> Dict[str, float]:
        return {"failures": self.failures, "opened_at": self.opened_at}

    @classmethod
    def from_dict(cls, data: Dict) -> "CircuitState":
        return cls(
            failures=int(data.get("failures", 0)),
            opened_at=float(data.get("opened_at", 0) or 0),
        )


class CircuitBreaker:
    """
    Global circuit breaker backed by a StateStore.

    Fed the totals of every page the engine processes. When the remote
    system is down every job fails, so the whole queue is paused instead of
    each job burning its attempts.

    Usage:
        breaker = CircuitBreaker(StateStore(db, tenant_id))
        if breaker.is_available():
            ...
        breaker.record_batch(successes=0, failures=20)
    """

    def __init__(
        self,
        state_store: StateStore,
        notifier=None,
        clock: Callable[[], float] = time.time,
        settings: Optional[Settings] = None,
    ):
        self.state_store = state_store
        self.notifier = notifier
        self._clock = clock

        settings = settings or get_settings()
        self.failure_threshold = settings.CB_FAILURE_THRESHOLD
        self.failure_ratio = settings.CB_FAILURE_RATIO
        self.recovery_delay = settings.CB_RECOVERY_DELAY
        self.stale_after = settings.CB_STALE_AFTER

    def is_available(self) -> bool:
        """
        Whether a run may claim jobs now.

        While open and inside the recovery delay this is False. Once the
        delay has passed the first caller claims the half-open trial and
        gets True; other callers get False until that trial's outcome is
        recorded or the trial expires. State opened more than
        ``stale_after`` seconds ago is discarded.
        """
        state = self._load()
        opened_at = float(state.get("opened_at", 0) or 0)
        if opened_at <= 0:
            return True

        now = self._clock()
        if now - opened_at > self.stale_after:
            self.state_store.set(GLOBAL_STATE_KEY, {})
            logger.info("Stale circuit breaker state discarded")
            return True

        if now - opened_at < self.recovery_delay:
            return False

        trial_at = float(state.get("trial_at", 0) or 0)
        if trial_at > 0 and now - trial_at < TRIAL_TTL:
            return False

        state["trial_at"] = now
        self.state_store.set(GLOBAL_STATE_KEY, state)
        logger.info("Circuit breaker half-open: allowing trial batch")
        return True

    def record_batch(self, successes: int, failures: int) -> None:
        """Record the totals of one page; empty pages are ignored."""
        total = successes + failures
        if total <= 0:
            return

        if failures / total >= self.failure_ratio:
            self.record_failure(successes, failures)
        else:
            self.record_success()

    def record_success(self) -> None:
        state = self._load()
        if not state:
            return
        self.state_store.set(GLOBAL_STATE_KEY, {})
        if state.get("opened_at"):
            logger.info("Circuit breaker closed: remote connection recovered")

    def record_failure(self, successes: int = 0, failures: int = 0) -> None:
        state = self._load()
        count = int(state.get("failures", 0)) + 1
        state["failures"] = count

        if count >= self.failure_threshold:
            state["opened_at"] = self._clock()
            state.pop("trial_at", None)
            logger.warning(
                "Circuit breaker opened: remote system appears unreachable",
                extra={
                    "count": count,
                    "successes": successes,
                    "failures": failures,
                    "recovery_delay": self.recovery_delay,
                }
            )
            self.state_store.set(GLOBAL_STATE_KEY, state)
            if self.notifier is not None:
                self.notifier.notify_circuit_breaker_open(count)
            return

        self.state_store.set(GLOBAL_STATE_KEY, state)

    def reset(self) -> None:
        """Administrative override: close the circuit."""
        if not self._load():
            return
        self.state_store.set(GLOBAL_STATE_KEY, {})
        logger.info("Circuit breaker reset by operator")

    def get_state(self) -> Optional[CircuitState]:
        state = self._load()
        if not state:
            return None
        return CircuitState.from_dict(state)

    def _load(self) -> Dict:
        return self.state_store.get(GLOBAL_STATE_KEY, {}) or {}


class ModuleCircuitBreaker:
    """
    Per-module circuit breaker backed by a StateStore.

    Usage:
        breaker = ModuleCircuitBreaker(StateStore(db, tenant_id))
        if breaker.is_module_available("catalog"):
            ...
        breaker.record_batch("catalog", successes=3, failures=1)
    """

    def __init__(
        self,
        state_store: StateStore,
        notifier=None,
        clock: Callable[[], float] = time.time,
        settings: Optional[Settings] = None,
    ):
        self.state_store = state_store
        self.notifier = notifier
        self._clock = clock

        settings = settings or get_settings()
        self.failure_threshold = settings.MODULE_CB_FAILURE_THRESHOLD
        self.failure_ratio = settings.MODULE_CB_FAILURE_RATIO
        self.recovery_delay = settings.MODULE_CB_RECOVERY_DELAY
        self.stale_after = settings.MODULE_CB_STALE_AFTER

        self._states: Dict[str, CircuitState] = self._load()

    def record_batch(self, module: str, successes: int, failures: int) -> None:
        """
        Record the outcome of one batch of jobs for a module.

        A batch whose failure ratio is below the threshold closes the
        circuit (its state is deleted). Otherwise the consecutive-failure
        counter increases; the circuit opens when it reaches the threshold,
        and a failed half-open trial re-opens it with a fresh timer.
        """
        total = successes + failures
        if total <= 0:
            return

        ratio = failures / total
        state = self._states.get(module)

        if ratio < self.failure_ratio:
            if state is not None:
                del self._states[module]
                self._save()
                if state.is_open:
                    logger.info(
                        "Module circuit closed after healthy batch",
                        extra={"sync_module": module}
                    )
            return

        now = self._clock()
        if state is None:
            state = CircuitState()
            self._states[module] = state

        state.failures += 1

        if state.is_open:
            if now - state.opened_at >= self.recovery_delay:
                state.opened_at = now
                logger.warning(
                    "Module circuit re-opened: half-open trial failed",
                    extra={"sync_module": module, "count": state.failures}
                )
        elif state.failures >= self.failure_threshold:
            state.opened_at = now
            logger.warning(
                "Module circuit opened",
                extra={"sync_module": module, "count": state.failures}
            )
            if self.notifier is not None:
                self.notifier.notify_module_circuit_open(module, state.failures)

        self._save()

    def is_module_available(self, module: str) -> bool:
        """
        Whether jobs of this module may be processed now.

        True when closed, half-open, or when the state is stale (opened more
        than ``stale_after`` seconds ago; such state is discarded).
        """
        state = self._states.get(module)
        if state is None or not state.is_open:
            return True

        elapsed = self._clock() - state.opened_at
        if elapsed > self.stale_after:
            del self._states[module]
            self._save()
            logger.info(
                "Stale module circuit state discarded",
                extra={"sync_module": module}
            )
            return True

        return elapsed >= self.recovery_delay

    def get_open_modules(self) -> Dict[str, CircuitState]:
        """Modules whose circuit is open (including half-open), stale state excluded."""
        now = self._clock()
        return {
            module: state
            for module, state in self._states.items()
            if state.is_open and now - state.opened_at <= self.stale_after
        }

    def get_unavailable_modules(self) -> Set[str]:
        """Modules that must not be processed now (open and inside the recovery delay)."""
        now = self._clock()
        return {
            module
            for module, state in self._states.items()
            if state.is_open and now - state.opened_at < self.recovery_delay
        }

    def reset_module(self, module: str) -> None:
        """Administrative override: forget a module's circuit state."""
        if module not in self._states:
            return
        del self._states[module]
        self._save()
        logger.info("Module circuit reset by operator", extra={"sync_module": module})

    def get_state(self, module: str) -> Optional[CircuitState]:
        return self._states.get(module)

    def _load(self) -> Dict[str, CircuitState]:
        raw = self.state_store.get(STATE_KEY, {}) or {}
        return {module: CircuitState.from_dict(data) for module, data in raw.items()}

    def _save(self) -> None:
        self.state_store.set(
            STATE_KEY,
            {module: state.to_dict() for module, state in self._states.items()},
        )
