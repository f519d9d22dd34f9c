"""The ingestor: stores messages arriving from clients.

Each message is routed by its kind to the index or result set the GUI
reads it from. Storage is reached through callables handed to the
Ingestor, so it works with any backend.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from .hunt_stats import HuntStatsManager
from .models import (
    MONITORING_WELL_KNOWN_FLOW,
    ClientRecord,
    QueryStatus,
    VeloMessage,
    VeloStatus,
)
from .results import (
    CLIENTS_ROOT,
    append_jsonl_item,
    day_name,
    get_fs_path_spec,
    parse_client_info_updates,
    upload_metadata_rows,
    vfs_download_records,
    vfs_list_records,
)

logger = logging.getLogger(__name__)

# store(org_id, index, doc_id, record)
Store = Callable[[str, str, str, dict[str, Any]], Any]
# update_index(org_id, index, doc_id, query)
UpdateIndex = Callable[[str, str, str, str], Any]
# write_results(org_id, path, jsonl, total_rows=..., start_row=..., sync=...)
ResultWriter = Callable[..., Any]
# enroll(org_id, csr_pem) -> client id
Enroll = Callable[[str, str], str]
# set_client_info(org_id, client_info)
ClientInfoSetter = Callable[[str, dict[str, Any]], Any]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_INTERROGATE_SCRIPT = "ctx._source.last_interrogate = params.last_interrogate"


class IngestionError(Exception):
    """Raised when a client message cannot be ingested."""


def calc_flow_outcome(query_stats: list[QueryStatus]) -> tuple[bool, bool]:
    """Return ``(failed, completed)`` for a collection's query states.

    A collection is complete once no query is still in progress; it failed
    if any query reported an error.
    """
    failed = False
    for status in query_stats:
        if status.status == VeloStatus.PROGRESS:
            return False, False
        if status.status == VeloStatus.GENERIC_ERROR:
            failed = True
    return failed, True


def extract_hunt_id(session_id: str) -> str | None:
    """Return the hunt id for a hunt flow id like ``F.1234.H``, else None."""
    if session_id.startswith("F.") and session_id.endswith(".H"):
        middle = session_id[2:-2]
        if middle:
            return "H." + middle
    return None


def _unix_ns(now: datetime) -> int:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    delta = now - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 10**9 + delta.microseconds * 1000


def _unix_s(now: datetime) -> int:
    return _unix_ns(now) // 10**9


def _collection_doc_id(client_id: str, session_id: str, kind: str) -> str:
    parts = [client_id, session_id]
    if kind:
        parts.append(kind)
    return "_".join(parts)


def _query_name(message: VeloMessage) -> str:
    response = message.vql_response
    if not response:
        return ""
    query = response.get("Query")
    if not isinstance(query, dict):
        return ""
    return query.get("Name") or ""


def _flow_path(message: VeloMessage, leaf: str) -> list[str]:
    return [CLIENTS_ROOT, message.source, "collections",
            message.session_id, leaf]


class Ingestor:
    """Routes client messages to the datastore."""

    def __init__(self, store: Store, update_index: UpdateIndex,
                 write_results: ResultWriter, *,
                 enroll: Enroll | None = None,
                 set_client_info: ClientInfoSetter | None = None,
                 hunt_stats: HuntStatsManager | None = None,
                 clock: Callable[[], datetime] | None = None):
        self.store = store
        self.update_index = update_index
        self.write_results = write_results
        self.enroll = enroll
        self.set_client_info = set_client_info
        self.hunt_stats = hunt_stats
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def process(self, message: VeloMessage) -> None:
        """Store one message according to its kind."""
        # Only enrolment is accepted unauthenticated.
        if not message.authenticated:
            self.handle_enrolment(message)
            return

        if message.session_id == MONITORING_WELL_KNOWN_FLOW:
            if message.log_message is not None:
                self.handle_monitoring_logs(message)
            elif message.vql_response is not None:
                self.handle_monitoring_responses(message)
            return

        self._maybe_handle_hunt_response(message)

        if message.log_message is not None:
            self.handle_logs(message)
        elif message.vql_response is not None:
            self.handle_responses(message)
        elif message.flow_stats is not None:
            self.handle_flow_stats(message)
        elif message.foreman_checkin is not None:
            self.handle_ping(message)
        elif message.file_buffer is not None:
            self.handle_uploads(message)

    def handle_enrolment(self, message: VeloMessage) -> str | None:
        """Register a client's certificate request; return its client id."""
        csr = message.csr
        if csr is None:
            return None
        if self.enroll is None:
            raise IngestionError("No enrolment handler configured")
        try:
            return self.enroll(message.org_id, csr.get("pem") or "")
        except Exception as exc:
            logger.error("While enrolling %s: %s", message.source, exc)
            raise

    def _handle_interrogation(self, message: VeloMessage) -> None:
        query = json.dumps({
            "script": {
                "source": _INTERROGATE_SCRIPT,
                "lang": "painless",
                "params": {"last_interrogate": message.session_id},
            }
        })
        self.update_index(message.org_id, "clients", message.source, query)

    def _store_vfs(self, message: VeloMessage, records) -> None:
        for doc_id, record in records:
            self.store(message.org_id, "vfs", doc_id, record)

    def handle_responses(self, message: VeloMessage) -> None:
        """Store the result rows of a regular collection."""
        name = _query_name(message)
        if not name:
            return

        now = self.clock()
        special = {
            "System.VFS.ListDirectory/Stats":
                lambda: self._store_vfs(message, vfs_list_records(message, now)),
            "Generic.Client.Info/BasicInformation":
                lambda: self._handle_interrogation(message),
            "System.VFS.DownloadFile":
                lambda: self._store_vfs(
                    message, vfs_download_records(message, now)),
        }.get(name)
        if special is not None:
            # Failures here must not stop the results being stored.
            try:
                special()
            except Exception as exc:  # noqa: BLE001
                logger.error("Handling %s: %s", name, exc)

        response = message.vql_response or {}
        self.write_results(
            message.org_id, get_fs_path_spec(message, name, now),
            response.get("JSONLResponse") or "",
            total_rows=int(response.get("TotalRows") or 0),
            start_row=int(response.get("QueryStartRow") or 0),
            sync=message.urgent)

    def handle_monitoring_logs(self, message: VeloMessage) -> None:
        """Store log lines from client event queries."""
        row = message.log_message or {}
        artifact_name = row.get("artifact") or ""
        if artifact_name == "Client.Info.Updates":
            return

        now = self.clock()
        path = [CLIENTS_ROOT, message.source, "monitoring_logs",
                artifact_name, day_name(now)]
        self.write_results(
            message.org_id, path, row.get("jsonl") or "",
            total_rows=int(row.get("number_of_rows") or 0),
            start_row=None, sync=False)

    def _handle_client_info_updates(self, message: VeloMessage) -> None:
        jsonl = (message.vql_response or {}).get("JSONLResponse") or ""
        try:
            rows = parse_client_info_updates(jsonl)
        except ValueError as exc:
            raise IngestionError(f"Invalid client info: {exc}") from exc
        if self.set_client_info is None:
            raise IngestionError("No client info handler configured")
        for row in rows:
            self.set_client_info(message.org_id,
                                 row.to_client_info(message.source))

    def handle_monitoring_responses(self, message: VeloMessage) -> None:
        """Store client event rows, tagged with the client id."""
        name = _query_name(message)
        if not name:
            return

        if name == "Server.Internal.ClientInfo":
            self._handle_client_info_updates(message)
            return

        response = message.vql_response or {}
        jsonl = append_jsonl_item(response.get("JSONLResponse") or "",
                                  "ClientId", message.source)
        self.write_results(
            message.org_id, get_fs_path_spec(message, name, self.clock()),
            jsonl, total_rows=int(response.get("TotalRows") or 0),
            start_row=None, sync=False)

    def _maybe_handle_hunt_response(self, message: VeloMessage) -> None:
        hunt_id = extract_hunt_id(message.session_id)
        if hunt_id is None:
            return

        # Every hunt collection opens with a log query announcing it.
        query = (message.vql_response or {}).get("Query")
        if not isinstance(query, dict) or \
                "Starting Hunt" not in (query.get("VQL") or ""):
            return

        if self.hunt_stats is not None:
            self.hunt_stats.update(hunt_id).inc_scheduled()
        entry = {
            "hunt_id": hunt_id,
            "client_id": message.source,
            "flow_id": message.session_id,
            "timestamp": _unix_s(self.clock()),
            "status": "started",
        }
        self.store(message.org_id, "hunt_flows",
                   _collection_doc_id(message.source, message.session_id, ""),
                   entry)

    def handle_flow_stats(self, message: VeloMessage) -> None:
        """Record a collection's progress and update hunt counters."""
        stats = message.flow_stats
        if stats is None or not message.source or not message.session_id:
            return

        query_stats = [QueryStatus.from_dict(s)
                       for s in stats.get("query_status") or []]
        record = {
            "client_id": message.source,
            "session_id": message.session_id,
            "total_uploaded_files": stats.get("total_uploaded_files", 0),
            "total_expected_uploaded_bytes":
                stats.get("total_expected_uploaded_bytes", 0),
            "total_uploaded_bytes": stats.get("total_uploaded_bytes", 0),
            "total_collected_rows": stats.get("total_collected_rows", 0),
            "total_logs": stats.get("total_logs", 0),
            "active_time": stats.get("timestamp", 0),
            "query_stats": [
                {"status": s.status.name, "error_message": s.error_message,
                 "names_with_response": list(s.names_with_response)}
                for s in query_stats],
            "type": "stats",
            "timestamp": _unix_ns(self.clock()),
        }

        failed, completed = calc_flow_outcome(query_stats)

        # The final status goes to its own document so a late progress
        # message can not overwrite it.
        kind = "completed" if completed else "stats"
        self.store(message.org_id, "collections",
                   _collection_doc_id(message.source, message.session_id, kind),
                   record)

        if not completed:
            return
        hunt_id = extract_hunt_id(message.session_id)
        if hunt_id is None or self.hunt_stats is None:
            return
        updater = self.hunt_stats.update(hunt_id)
        if failed:
            updater.inc_error()
        else:
            updater.inc_completed()

    def handle_ping(self, message: VeloMessage) -> None:
        """Record that the client was seen now."""
        record = ClientRecord(client_id=message.source, type="ping",
                              ping=_unix_ns(self.clock()))
        try:
            self.store(message.org_id, "clients", message.source + "_ping",
                       record.to_dict())
        except Exception as exc:
            if "document_missing_exception" not in str(exc):
                raise

    def handle_logs(self, message: VeloMessage) -> None:
        """Store log lines of a regular collection."""
        msg = message.log_message or {}
        jsonl = msg.get("jsonl") or ""
        if not jsonl:
            raise IngestionError("Invalid log messages response")

        self.write_results(
            message.org_id, _flow_path(message, "logs"), jsonl,
            total_rows=int(msg.get("number_of_rows") or 0),
            start_row=int(msg.get("id") or 0),
            sync=message.urgent)

    def handle_uploads(self, message: VeloMessage) -> None:
        """Record metadata of a finished upload."""
        rows = upload_metadata_rows(message, self.clock())
        if not rows:
            return
        buffer = message.file_buffer or {}
        jsonl = "".join(json.dumps(row) + "\n" for row in rows)
        self.write_results(
            message.org_id, _flow_path(message, "uploads"), jsonl,
            total_rows=len(rows),
            start_row=int(buffer.get("upload_number") or 0),
            sync=False)