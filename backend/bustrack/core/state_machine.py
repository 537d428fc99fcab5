"""Discrete journey state of a single vehicle.

Phases for the active direction::

    not_started -> ongoing(0) -> paused (reached stop 0) -> ongoing(1) -> ...
                -> completed -> [start_return] -> ongoing(0) ... -> completed

Every transition returns True when applied and False when the call is not
valid from the current state. Invalid calls never raise: the control surface
may race the engine, and ignoring the late call is the safe outcome.
"""

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class JourneyPhase(str, Enum):
    NOT_STARTED = "not_started"
    ONGOING = "ongoing"
    PAUSED = "paused"
    COMPLETED = "completed"


@dataclass
class JourneyState:
    started: bool = False
    paused: bool = False
    is_return: bool = False
    current_stop_index: int = 0


class JourneyStateMachine:
    def __init__(self, stop_count: int) -> None:
        self.stop_count = stop_count
        self.state = JourneyState()
        # True while paused because of an arrival rather than a manual hold
        self._at_stop = False

    @property
    def phase(self) -> JourneyPhase:
        s = self.state
        if not s.started:
            return JourneyPhase.NOT_STARTED
        if s.current_stop_index >= self.stop_count:
            return JourneyPhase.COMPLETED
        if s.paused:
            return JourneyPhase.PAUSED
        return JourneyPhase.ONGOING

    @property
    def at_stop(self) -> bool:
        return self.phase is JourneyPhase.PAUSED and self._at_stop

    def start(self) -> bool:
        if self.phase is not JourneyPhase.NOT_STARTED:
            return self._ignored("start")
        if self.stop_count < 2:
            logger.info("Journey needs at least 2 stops, have %d", self.stop_count)
            return False
        self.state.started = True
        self.state.paused = False
        self.state.current_stop_index = 0
        self._at_stop = False
        return True

    def on_arrival(self, stop_index: int) -> bool:
        if self.phase is not JourneyPhase.ONGOING:
            return self._ignored("arrival")
        if stop_index < self.state.current_stop_index or stop_index >= self.stop_count:
            logger.debug(
                "Stale arrival for stop %d (heading to %d)",
                stop_index, self.state.current_stop_index,
            )
            return False
        if stop_index > self.state.current_stop_index:
            logger.warning(
                "Arrival at stop %d skips stops %d..%d",
                stop_index, self.state.current_stop_index, stop_index - 1,
            )
        self.state.current_stop_index = stop_index + 1
        if self.state.current_stop_index >= self.stop_count:
            self.state.paused = False
            self._at_stop = False
        else:
            self.state.paused = True
            self._at_stop = True
        return True

    def pause(self) -> bool:
        if self.phase is not JourneyPhase.ONGOING:
            return self._ignored("pause")
        self.state.paused = True
        self._at_stop = False
        return True

    def resume(self) -> bool:
        if self.phase is not JourneyPhase.PAUSED:
            return self._ignored("resume")
        self.state.paused = False
        self._at_stop = False
        return True

    def start_return(self, return_stop_count: int) -> bool:
        if self.phase is not JourneyPhase.COMPLETED or self.state.is_return:
            return self._ignored("start_return")
        if return_stop_count < 2:
            logger.info("Return journey needs at least 2 stops, have %d", return_stop_count)
            return False
        self.stop_count = return_stop_count
        self.state = JourneyState(started=True, paused=False, is_return=True, current_stop_index=0)
        self._at_stop = False
        return True

    def restart(self) -> bool:
        self.state.started = False
        self.state.paused = False
        self.state.current_stop_index = 0
        self._at_stop = False
        return True

    def restore(self, state: JourneyState, at_stop: bool = False) -> None:
        """Rehydrate from a persisted document, clamping the index into range."""
        index = min(max(state.current_stop_index, 0), self.stop_count)
        self.state = JourneyState(
            started=state.started,
            paused=state.paused and state.started,
            is_return=state.is_return,
            current_stop_index=index if state.started else 0,
        )
        self._at_stop = at_stop and self.state.paused

    def status_label(self, stop_names: list[str]) -> str:
        phase = self.phase
        idx = self.state.current_stop_index
        if phase is JourneyPhase.NOT_STARTED or not stop_names:
            return "Not Started"
        if phase is JourneyPhase.COMPLETED:
            suffix = " (Return)" if self.state.is_return else ""
            return f"Reached {stop_names[-1]}{suffix}"
        if phase is JourneyPhase.PAUSED:
            if self._at_stop and idx > 0:
                return f"Reached {stop_names[idx - 1]}"
            return f"Paused before {stop_names[idx]}"
        return f"Ongoing to {stop_names[idx]}"

    def _ignored(self, action: str) -> bool:
        logger.debug("Ignoring %s in phase %s", action, self.phase.value)
        return False
