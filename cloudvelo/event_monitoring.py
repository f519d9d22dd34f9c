"""Building client event table updates from the monitoring state."""

from __future__ import annotations

import copy

from .models import (
    MONITORING_WELL_KNOWN_FLOW,
    ArtifactCollectorArgs,
    ClientEventTable,
    VeloMessage,
    VQLEventTable,
)

DEFAULT_EVENT_MAX_WAIT = 120

# Event queries never time out.
EVENT_TIMEOUT = 99999999


def get_client_update_event_table_message(
        state: ClientEventTable, labels: list[str],
        default_max_wait: int = 0) -> VeloMessage:
    """Return the event table update for a client carrying ``labels``."""
    result = VQLEventTable(version=state.version)

    if state.artifacts is None:
        state.artifacts = ArtifactCollectorArgs()

    result.event.extend(
        copy.deepcopy(event) for event in state.artifacts.compiled_collector_args)

    for table in state.label_events:
        if table.label in labels:
            result.event.extend(
                copy.deepcopy(event)
                for event in table.artifacts.compiled_collector_args)

    for event in result.event:
        if event.max_wait == 0:
            event.max_wait = default_max_wait
        if event.max_wait == 0:
            event.max_wait = DEFAULT_EVENT_MAX_WAIT
        event.timeout = EVENT_TIMEOUT

    return VeloMessage(update_event_table=result,
                       session_id=MONITORING_WELL_KNOWN_FLOW)


def labels_key(labels: list[str], state: ClientEventTable) -> str:
    """Key identifying the event table a client with ``labels`` receives.

    Only labels that the event table uses take part, in table order.
    """
    return "|".join(table.label for table in state.label_events
                    if table.label in labels)