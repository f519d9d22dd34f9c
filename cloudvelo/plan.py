"""An update plan: hunts and event tables to send to clients in one run."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .models import (
    ArtifactCollectorArgs,
    ClientEventTable,
    ClientRecord,
    Hunt,
    VeloMessage,
)

logger = logging.getLogger(__name__)

Launcher = Callable[[ArtifactCollectorArgs, list[str]], Any]
Messenger = Callable[[VeloMessage, list[str]], Any]
Store = Callable[[str, str, str, dict[str, Any]], Any]


@dataclass
class Plan:
    """Work computed by the foreman for one org."""

    current_monitoring_state: ClientEventTable = field(
        default_factory=ClientEventTable)
    org_id: str = ""
    event_max_wait: int = 0

    # Hunt id -> clients scheduled in this run.
    hunts_to_clients: dict[str, list[str]] = field(default_factory=dict)
    hunts_by_hunt_id: dict[str, Hunt] = field(default_factory=dict)
    # Client id -> hunts to schedule on it.
    client_id_to_hunts: dict[str, list[Hunt]] = field(default_factory=dict)
    client_id_to_client_records: dict[str, ClientRecord] = field(
        default_factory=dict)
    # Label key -> event table update message.
    monitoring_tables: dict[str, VeloMessage] = field(default_factory=dict)
    # Label key -> clients needing that table.
    monitoring_tables_to_clients: dict[str, list[str]] = field(
        default_factory=dict)
    client_assigned_hunts: dict[str, ClientRecord] = field(default_factory=dict)

    def assign_client_to_hunt(self, client_info: ClientRecord,
                              hunt: Hunt) -> None:
        client_id = client_info.client_id
        planned = self.client_id_to_hunts.get(client_id, [])
        if not any(h.hunt_id == hunt.hunt_id for h in planned):
            self.client_id_to_hunts[client_id] = [*planned, hunt]
        self.client_id_to_client_records[client_id] = client_info

    def _record_update(self, client_id: str, record: ClientRecord) -> None:
        self.client_assigned_hunts[client_id] = ClientRecord(
            client_id=client_id,
            assigned_hunts=list(record.assigned_hunts),
            last_event_table_version=record.last_event_table_version,
            last_hunt_timestamp=record.last_hunt_timestamp,
        )

    def _update_assigned_hunts(self, client_ids: list[str],
                               hunt_id: str) -> None:
        for client_id in client_ids:
            record = self.client_id_to_client_records.get(client_id)
            if record is None:
                continue
            if hunt_id not in record.assigned_hunts:
                record.assigned_hunts.append(hunt_id)
            self._record_update(client_id, record)

    def _update_last_event_timestamp(self, client_ids: list[str]) -> None:
        for client_id in client_ids:
            record = self.client_id_to_client_records.get(client_id)
            if record is not None:
                self._record_update(client_id, record)

    def execute_hunt_update(self, launcher: Launcher) -> None:
        """Schedule every planned hunt on its clients via ``launcher``."""
        self.hunts_to_clients = {}
        for client_id, hunts in self.client_id_to_hunts.items():
            for hunt in hunts:
                clients = self.hunts_to_clients.get(hunt.hunt_id, [])
                if client_id not in clients:
                    self.hunts_to_clients[hunt.hunt_id] = [client_id, *clients]
                self.hunts_by_hunt_id[hunt.hunt_id] = hunt

        for hunt_id, clients in self.hunts_to_clients.items():
            if not clients:
                continue
            hunt = self.hunts_by_hunt_id.get(hunt_id)
            if hunt is None or hunt.start_request is None:
                continue

            logger.info("Scheduling hunt %s on %d clients: %s",
                        hunt.hunt_id, len(clients), clients[:10])
            self._update_assigned_hunts(clients, hunt.hunt_id)
            launcher(copy.deepcopy(hunt.start_request), list(clients))

    def execute_client_monitoring_update(self, messenger: Messenger) -> None:
        """Send the planned event tables to their clients via ``messenger``."""
        for key, clients in self.monitoring_tables_to_clients.items():
            message = self.monitoring_tables.get(key)
            if message is None:
                continue
            logger.info("Update Client Monitoring Tables %s on %d clients: %s",
                        key, len(clients), clients[:10])
            self._update_last_event_timestamp(clients)
            messenger(message, list(clients))

    def close_plan(self, store: Store) -> None:
        """Write the affected client records so they are not picked again."""
        for client_id, record in self.client_assigned_hunts.items():
            store(self.org_id, "clients", client_id + "_hunts",
                  record.to_dict())