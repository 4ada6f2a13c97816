# concurrency.py
"""
Run serialization per concurrency group.

Each group has an explicit state record (GroupState) living in a
GroupRegistry that the serializer is constructed with. A group is `idle`
(no active run), `running` (one active run, nobody waiting) or `queued`
(active run plus an ordered waitlist).

Policies:
  - queue (cancel_in_progress=False): new runs wait FIFO until every earlier
    run of the group reached a terminal state.
  - cancel-in-progress: the active run (and anything still waiting) gets its
    CancelToken fired; the new run is admitted once the active one leaves.

Cancellation is cooperative: tokens are only checked at step boundaries.
"""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, Optional

from .errors import Cancelled

# Waiters re-check their own token this often; cancel() from outside the
# serializer does not notify the condition.
POLL_INTERVAL = 0.05


class CancelToken:
    """Cooperative cancellation flag shared by a run and its jobs."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or "cancelled")


class GroupPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    QUEUED = "queued"


@dataclass
class _Waiter:
    run_id: str
    token: CancelToken


@dataclass
class GroupState:
    name: str
    cancel_in_progress: bool = False
    active: Optional[str] = None
    active_token: Optional[CancelToken] = None
    waitlist: Deque[_Waiter] = field(default_factory=deque)

    @property
    def phase(self) -> GroupPhase:
        if self.waitlist:
            return GroupPhase.QUEUED
        if self.active is not None:
            return GroupPhase.RUNNING
        return GroupPhase.IDLE

    @property
    def waiting(self) -> list[str]:
        return [w.run_id for w in self.waitlist]


class GroupRegistry:
    """Holds one GroupState per concurrency group label."""

    def __init__(self) -> None:
        self._groups: Dict[str, GroupState] = {}

    def get(self, name: str) -> GroupState:
        state = self._groups.get(name)
        if state is None:
            state = GroupState(name=name)
            self._groups[name] = state
        return state


class ConcurrencySerializer:
    """Admits at most one running pipeline run per concurrency group."""

    def __init__(self, registry: GroupRegistry):
        self.registry = registry
        self._cond = threading.Condition()

    def enter(
        self,
        group: str,
        run_id: str,
        token: CancelToken,
        *,
        cancel_in_progress: bool = False,
        on_queued: Optional[Callable[[GroupState], None]] = None,
    ) -> bool:
        """
        Block until `run_id` holds the group's slot.

        Returns False if the run was cancelled while waiting (it never ran).
        """
        with self._cond:
            state = self.registry.get(group)
            state.cancel_in_progress = cancel_in_progress

            if state.active is None and not state.waitlist:
                state.active = run_id
                state.active_token = token
                return True

            if cancel_in_progress:
                reason = f"superseded by run {run_id}"
                if state.active_token is not None:
                    state.active_token.cancel(reason)
                for waiter in state.waitlist:
                    waiter.token.cancel(reason)

            me = _Waiter(run_id=run_id, token=token)
            state.waitlist.append(me)
            self._cond.notify_all()
            if on_queued is not None:
                on_queued(state)

            while True:
                if token.cancelled:
                    state.waitlist.remove(me)
                    self._cond.notify_all()
                    return False
                if state.active is None and state.waitlist[0] is me:
                    state.waitlist.popleft()
                    state.active = run_id
                    state.active_token = token
                    self._cond.notify_all()
                    return True
                self._cond.wait(timeout=POLL_INTERVAL)

    def leave(self, group: str, run_id: str) -> None:
        """Release the slot held by `run_id` and wake the next waiter."""
        with self._cond:
            state = self.registry.get(group)
            if state.active == run_id:
                state.active = None
                state.active_token = None
            else:
                for waiter in list(state.waitlist):
                    if waiter.run_id == run_id:
                        state.waitlist.remove(waiter)
            self._cond.notify_all()

    def state(self, group: str) -> GroupState:
        with self._cond:
            return self.registry.get(group)
