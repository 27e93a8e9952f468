"""
Segmentation engine state machine.

States: UNINITIALIZED -> LOADING -> READY <-> (reset) ; LOADING/READY -> DEGRADED
FAILED is reachable from anywhere, only when the fallback itself breaks.

Guard counters:
- init_failures: handshake attempts that failed in the current load
- consecutive_errors: generic backend failures since the last success
- timestamp_anomalies: timestamp errors since the last success

No I/O happens here, so every transition can be tested without a backend.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Tuple
from loguru import logger

from subject_overlay.core.config import OverlayConfig
from subject_overlay.core.contracts import EngineState
from subject_overlay.core.errors import BackendErrorCode


# Most recent transitions kept for debugging
HISTORY_LIMIT = 32


class FailureAction(Enum):
    """What the engine must do after a backend failure."""
    CONTINUE = "continue"   # fall back for this frame only
    DEMOTE = "demote"       # abandon the model for the session
    RESET = "reset"         # tear down and re-handshake before next inference


@dataclass(frozen=True)
class EngineThresholds:
    max_init_retries: int = 3
    max_consecutive_errors: int = 3
    max_timestamp_anomalies: int = 2

    @classmethod
    def from_config(cls, config: OverlayConfig) -> EngineThresholds:
        return cls(
            max_init_retries=config.max_init_retries,
            max_consecutive_errors=config.max_consecutive_errors,
            max_timestamp_anomalies=config.max_timestamp_anomalies,
        )


@dataclass
class EngineStateMachine:
    thresholds: EngineThresholds = field(default_factory=EngineThresholds)
    state: EngineState = EngineState.UNINITIALIZED
    init_failures: int = 0
    consecutive_errors: int = 0
    timestamp_anomalies: int = 0
    reset_pending: bool = False
    history: Deque[Tuple[EngineState, EngineState]] = field(
        default_factory=lambda: deque(maxlen=HISTORY_LIMIT)
    )

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------

    @property
    def uses_model(self) -> bool:
        return self.state is EngineState.READY

    @property
    def is_terminal(self) -> bool:
        return self.state in (EngineState.DEGRADED, EngineState.FAILED)

    # ------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------

    def begin_loading(self) -> None:
        self._require(EngineState.UNINITIALIZED)
        self.init_failures = 0
        self._move(EngineState.LOADING)

    def record_init_success(self) -> None:
        self._require(EngineState.LOADING)
        self._clear_counters()
        self._move(EngineState.READY)

    def record_init_failure(self) -> bool:
        """
        Count a failed handshake.

        Returns:
            True if another attempt is allowed, False once the retry
            budget is spent (the machine is then DEGRADED).
        """
        self._require(EngineState.LOADING)
        self.init_failures += 1
        if self.init_failures > self.thresholds.max_init_retries:
            self._move(EngineState.DEGRADED)
            return False
        return True

    def mark_unavailable(self) -> None:
        """No model backend at all: go straight to DEGRADED."""
        self._require(EngineState.UNINITIALIZED, EngineState.LOADING)
        self._move(EngineState.DEGRADED)

    # ------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------

    def record_success(self) -> None:
        self._require(EngineState.READY)
        self.consecutive_errors = 0
        self.timestamp_anomalies = 0

    def record_failure(self, code: BackendErrorCode) -> FailureAction:
        """
        Count a failed inference and decide the follow-up.

        Timestamp anomalies are tracked apart from generic failures:
        they lead to a reset, never to demotion.
        """
        self._require(EngineState.READY)

        if code is BackendErrorCode.TIMESTAMP_ANOMALY:
            self.timestamp_anomalies += 1
            if self.timestamp_anomalies >= self.thresholds.max_timestamp_anomalies:
                self.reset_pending = True
                return FailureAction.RESET
            return FailureAction.CONTINUE

        self.consecutive_errors += 1
        if self.consecutive_errors >= self.thresholds.max_consecutive_errors:
            self._move(EngineState.DEGRADED)
            return FailureAction.DEMOTE
        return FailureAction.CONTINUE

    # ------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------

    def begin_reset(self) -> None:
        """READY -> LOADING with all counters cleared."""
        self._require(EngineState.READY)
        self.reset_pending = False
        self._clear_counters()
        self.init_failures = 0
        self._move(EngineState.LOADING)

    # ------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------

    def shut_down(self) -> None:
        """Retire the model for good; only the fallback answers afterwards."""
        self.reset_pending = False
        if self.state in (EngineState.UNINITIALIZED, EngineState.LOADING, EngineState.READY):
            self._move(EngineState.DEGRADED)

    # ------------------------------------------------------------
    # Fatal
    # ------------------------------------------------------------

    def fail(self) -> None:
        if self.state is not EngineState.FAILED:
            self._move(EngineState.FAILED)

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    def _clear_counters(self) -> None:
        self.consecutive_errors = 0
        self.timestamp_anomalies = 0

    def _move(self, new_state: EngineState) -> None:
        old_state = self.state
        self.state = new_state
        self.history.append((old_state, new_state))
        logger.debug(f"Engine state: {old_state.value} -> {new_state.value}")

    def _require(self, *states: EngineState) -> None:
        if self.state not in states:
            expected = ", ".join(s.value for s in states)
            raise RuntimeError(
                f"Invalid engine transition from {self.state.value} (expected {expected})"
            )
