from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from deadswitch.domain.cycle_codes import CycleEvent
from deadswitch.domain.cycle_engine import CycleEngine
from deadswitch.errors import DeliveryError
from deadswitch.obs.logging import get_logger
from deadswitch.services.messages import MessageRenderer
from deadswitch.services.notifier import Notifier
from deadswitch.services.process_lock import switch_lock
from deadswitch.services.state_store import StateStore

logger = get_logger(__name__)


def epoch_now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class TickOutcome:
    events: tuple[CycleEvent, ...]
    messages_sent: int
    initialised: bool = False


class TickRunner:
    """Runs one tick as a single critical section under the switch lock.

    Nothing is written until every message produced by the decision was handed
    to the notifier; a delivery failure leaves the stored state untouched so
    the next tick retries the same decision.
    """

    def __init__(
        self,
        *,
        engine: CycleEngine,
        store: StateStore,
        lock_path: str | Path,
        notifier: Notifier,
        renderer: MessageRenderer,
        clock: Callable[[], int] = epoch_now,
    ) -> None:
        self._engine = engine
        self._store = store
        self._lock_path = lock_path
        self._notifier = notifier
        self._renderer = renderer
        self._clock = clock

    def run(self) -> TickOutcome:
        with switch_lock(self._lock_path) as lock:
            logger.debug("tick_lock_acquired", lock_path=lock.path, pid=lock.pid)
            now = self._clock()
            state = self._store.load()
            if state is None:
                state = self._engine.initialise(now)
                self._store.save(state)
                logger.info(
                    "state_initialised",
                    cycle_start_at=state.cycle_start_at,
                    next_check_at=state.next_check_at,
                    deadline_at=state.deadline_at,
                )
                return TickOutcome(events=(CycleEvent.INITIALISED,), messages_sent=0, initialised=True)

            decision = self._engine.decide(state, now)
            for event in decision.events:
                logger.info(
                    f"tick_{event.value}",
                    now=now,
                    missed_cycles=decision.state.missed_cycles,
                    deadline_at=decision.state.deadline_at,
                )

            sent = 0
            for action in decision.actions:
                message = self._renderer.render(action)
                try:
                    self._notifier.send(message.recipient, message.subject, message.body)
                except DeliveryError as exc:
                    logger.error(
                        "notification_failed",
                        kind=action.kind.value,
                        recipient=message.recipient,
                        sent_before_failure=sent,
                        error=str(exc),
                    )
                    raise
                sent += 1
                logger.info("notification_sent", kind=action.kind.value, recipient=message.recipient)

            self._store.save(decision.state)
            return TickOutcome(events=decision.events, messages_sent=sent)
