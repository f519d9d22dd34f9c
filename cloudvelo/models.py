"""Records and messages exchanged between clients, the foreman and the ingestor."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

# Client event results are always sent to this flow id.
MONITORING_WELL_KNOWN_FLOW = "F.Monitoring"

_CLIENT_RECORD_KEYS = {
    "client_id": "client_id",
    "type": "type",
    "labels": "labels",
    "lower_labels": "lower_labels",
    "assigned_hunts": "assigned_hunts",
    "system": "system",
    "ping": "ping",
    "last_label_timestamp": "labels_timestamp",
    "last_event_table_version": "last_event_table_version",
    "last_hunt_timestamp": "last_hunt_timestamp",
}


@dataclass
class ClientRecord:
    """A client's document in the clients index."""

    client_id: str = ""
    type: str = ""
    labels: list[str] = field(default_factory=list)
    lower_labels: list[str] = field(default_factory=list)
    assigned_hunts: list[str] = field(default_factory=list)
    system: str = ""
    ping: int = 0
    last_label_timestamp: int = 0
    last_event_table_version: int = 0
    last_hunt_timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Serialise, leaving out empty fields."""
        result: dict[str, Any] = {}
        for attr, key in _CLIENT_RECORD_KEYS.items():
            value = getattr(self, attr)
            if isinstance(value, list):
                value = list(value)
            if value or attr == "client_id":
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClientRecord":
        kwargs = {}
        for attr, key in _CLIENT_RECORD_KEYS.items():
            if data.get(key) is not None:
                value = data[key]
                kwargs[attr] = list(value) if isinstance(value, list) else value
        return cls(**kwargs)


class HuntState(IntEnum):
    UNSET = 0
    PAUSED = 1
    RUNNING = 2
    STOPPED = 3
    ARCHIVED = 4


class OsType(IntEnum):
    ALL = 0
    WINDOWS = 1
    LINUX = 2
    OSX = 3

    @property
    def os_name(self) -> str:
        """The system name clients report for this OS; empty for ALL."""
        return {
            OsType.WINDOWS: "windows",
            OsType.LINUX: "linux",
            OsType.OSX: "darwin",
        }.get(self, "")


@dataclass
class HuntCondition:
    """Restricts which clients a hunt runs on."""

    labels: list[str] = field(default_factory=list)
    excluded_labels: list[str] = field(default_factory=list)
    os: OsType = OsType.ALL


@dataclass
class VQLCollectorArgs:
    """A compiled query to run on a client."""

    name: str = ""
    queries: list[str] = field(default_factory=list)
    max_wait: int = 0
    timeout: int = 0
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class ArtifactCollectorArgs:
    """A request to collect artifacts."""

    client_id: str = ""
    artifacts: list[str] = field(default_factory=list)
    compiled_collector_args: list[VQLCollectorArgs] = field(default_factory=list)


@dataclass
class Hunt:
    """A hunt: a collection scheduled across many clients."""

    hunt_id: str = ""
    state: HuntState = HuntState.UNSET
    create_time: int = 0
    # Expiry time in microseconds since the epoch.
    expires: int = 0
    condition: HuntCondition | None = None
    start_request: ArtifactCollectorArgs | None = None

    def is_expired(self, now_us: int) -> bool:
        return self.expires < now_us


@dataclass
class LabelEvents:
    """Event artifacts applied to clients carrying a label."""

    label: str = ""
    artifacts: ArtifactCollectorArgs = field(default_factory=ArtifactCollectorArgs)


@dataclass
class ClientEventTable:
    """The server's client monitoring configuration."""

    version: int = 0
    artifacts: ArtifactCollectorArgs | None = None
    label_events: list[LabelEvents] = field(default_factory=list)


@dataclass
class VQLEventTable:
    """The event queries sent to one client."""

    version: int = 0
    event: list[VQLCollectorArgs] = field(default_factory=list)


class VeloStatus(IntEnum):
    OK = 0
    GENERIC_ERROR = 1
    PROGRESS = 2


@dataclass
class QueryStatus:
    """Progress of one query in a collection."""

    status: VeloStatus = VeloStatus.OK
    error_message: str = ""
    names_with_response: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueryStatus":
        status = data.get("status", VeloStatus.OK)
        if isinstance(status, str):
            status = VeloStatus[status]
        return cls(
            status=VeloStatus(status),
            error_message=data.get("error_message", "") or "",
            names_with_response=list(data.get("names_with_response") or []),
        )


_PAYLOAD_KEYS = {
    "vql_response": "VQLResponse",
    "log_message": "LogMessage",
    "flow_stats": "FlowStats",
    "foreman_checkin": "ForemanCheckin",
    "file_buffer": "FileBuffer",
    "csr": "CSR",
}


@dataclass
class VeloMessage:
    """A message from or to a client.

    The payloads arriving from clients are kept as plain mappings.
    """

    session_id: str = ""
    source: str = ""
    org_id: str = ""
    urgent: bool = False
    authenticated: bool = True
    vql_response: dict[str, Any] | None = None
    log_message: dict[str, Any] | None = None
    flow_stats: dict[str, Any] | None = None
    foreman_checkin: dict[str, Any] | None = None
    file_buffer: dict[str, Any] | None = None
    csr: dict[str, Any] | None = None
    update_event_table: VQLEventTable | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VeloMessage":
        auth_state = data.get("auth_state", 0)
        kwargs: dict[str, Any] = {
            "session_id": data.get("session_id", "") or "",
            "source": data.get("source", "") or "",
            "org_id": data.get("org_id", "") or "",
            "urgent": bool(data.get("urgent", False)),
            "authenticated": auth_state not in ("UNAUTHENTICATED", 1),
        }
        for attr, key in _PAYLOAD_KEYS.items():
            payload = data.get(key)
            if payload is not None:
                kwargs[attr] = dict(payload)
        return cls(**kwargs)