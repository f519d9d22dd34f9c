"""The foreman: assigns hunts and event tables to recently seen clients.

Every run looks at the clients that checked in since the previous run,
works out which running hunts they still need and whether their client
event table is out of date, and records the result in a Plan which is
then executed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from .event_monitoring import get_client_update_event_table_message, labels_key
from .models import ClientRecord, Hunt, HuntState, OsType
from .plan import Launcher, Messenger, Plan, Store

logger = logging.getLogger(__name__)

StopHunt = Callable[[Hunt], object]


def client_has_labels(client_info: ClientRecord, labels: Iterable[str]) -> bool:
    """Return True if the client carries any of ``labels`` (case-insensitive)."""
    return any(label.lower() in client_info.lower_labels for label in labels)


def hunts_contain(hunts: Iterable[Hunt], hunt_id: str) -> bool:
    """Return True if a hunt with ``hunt_id`` is among ``hunts``."""
    return any(hunt.hunt_id == hunt_id for hunt in hunts)


def _now_us() -> int:
    return time.time_ns() // 1000


@dataclass
class Foreman:
    """Plans hunt and monitoring updates for clients seen since the last run.

    ``last_run_time`` is in nanoseconds since the epoch.
    """

    last_run_time: int = field(default_factory=time.time_ns)

    def plan_monitoring_for_client(self, client_info: ClientRecord,
                                   plan: Plan) -> None:
        state = plan.current_monitoring_state

        # The client's table needs an update when its labels changed since
        # the last run or the event table is newer than what it has.
        if not (client_info.last_label_timestamp >= self.last_run_time or
                client_info.last_event_table_version < state.version):
            return

        key = labels_key(client_info.labels, state)
        if key not in plan.monitoring_tables:
            plan.monitoring_tables[key] = get_client_update_event_table_message(
                state, client_info.labels, plan.event_max_wait)

        clients = plan.monitoring_tables_to_clients.get(key, [])
        if client_info.client_id not in clients:
            plan.monitoring_tables_to_clients[key] = [
                client_info.client_id, *clients]

        client_info.last_event_table_version = state.version
        plan.client_id_to_client_records[client_info.client_id] = client_info

    def plan_hunt_for_client(self, client_info: ClientRecord, hunt: Hunt,
                             plan: Plan) -> None:
        if hunt.hunt_id in client_info.assigned_hunts:
            return

        condition = hunt.condition
        if condition is None:
            plan.assign_client_to_hunt(client_info, hunt)
            return

        if condition.labels and not client_has_labels(
                client_info, condition.labels):
            return

        if condition.excluded_labels and client_has_labels(
                client_info, condition.excluded_labels):
            return

        if condition.os != OsType.ALL:
            os_name = OsType(condition.os).os_name
            if os_name and client_info.system != os_name:
                return

        plan.assign_client_to_hunt(client_info, hunt)

    def plan_for_client(self, client_info: ClientRecord,
                        hunts: Iterable[Hunt], plan: Plan) -> None:
        for hunt in hunts:
            self.plan_hunt_for_client(client_info, hunt, plan)
        self.plan_monitoring_for_client(client_info, plan)

    def calculate_update(self, clients: Iterable[ClientRecord],
                         hunts: Iterable[Hunt] | None, plan: Plan) -> None:
        """Plan updates for every client that pinged after the last run."""
        hunts = list(hunts or [])
        for client_info in clients:
            if client_info.ping > self.last_run_time:
                self.plan_for_client(client_info, hunts, plan)

    def get_active_hunts(self, hunts: Iterable[Hunt],
                         stop_hunt: StopHunt | None = None,
                         now_us: int | None = None) -> list[Hunt]:
        """Return the running, unexpired hunts; stop the expired ones.

        ``stop_hunt`` is called with each expired hunt; without it the hunt
        is marked stopped in place.
        """
        if now_us is None:
            now_us = _now_us()

        result = []
        for hunt in hunts:
            if hunt.state != HuntState.RUNNING:
                continue
            if hunt.is_expired(now_us):
                if stop_hunt is not None:
                    stop_hunt(hunt)
                else:
                    hunt.state = HuntState.STOPPED
                continue
            result.append(hunt)
        return result

    def update_plan(self, clients: Iterable[ClientRecord],
                    hunts: Iterable[Hunt], plan: Plan,
                    launcher: Launcher, messenger: Messenger, store: Store,
                    stop_hunt: StopHunt | None = None,
                    now_us: int | None = None) -> list[Hunt]:
        """Compute and execute a full update; return the active hunts."""
        active = self.get_active_hunts(hunts, stop_hunt, now_us)
        self.calculate_update(clients, active, plan)
        plan.execute_hunt_update(launcher)
        plan.execute_client_monitoring_update(messenger)
        plan.close_plan(store)
        return active