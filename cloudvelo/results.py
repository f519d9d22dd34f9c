"""Turning client responses into result locations and index records."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator

from .models import MONITORING_WELL_KNOWN_FLOW, VeloMessage
from .name_mapping import UploadRequest, s3_components_for_client_upload

CLIENTS_ROOT = "clients"
LIST_DIRECTORY_ARTIFACT = "System.VFS.ListDirectory/Listing"


@dataclass
class ClientInfoUpdate:
    """One row of the client information a client sends on start up."""

    name: str = ""
    build_time: str = ""
    labels: list[str] = field(default_factory=list)
    hostname: str = ""
    os: str = ""
    architecture: str = ""
    platform: str = ""
    mac_addresses: list[str] = field(default_factory=list)
    install_time: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClientInfoUpdate":
        return cls(
            name=data.get("Name") or "",
            build_time=data.get("BuildTime") or "",
            labels=list(data.get("Labels") or []),
            hostname=data.get("Hostname") or "",
            os=data.get("OS") or "",
            architecture=data.get("Architecture") or "",
            platform=data.get("Platform") or "",
            mac_addresses=list(data.get("MACAddresses") or []),
            install_time=int(data.get("InstallTime") or 0),
        )

    def to_client_info(self, client_id: str) -> dict[str, Any]:
        """Return the client information record for ``client_id``."""
        return {
            "client_id": client_id,
            "hostname": self.hostname,
            "fqdn": self.hostname,
            "system": self.os,
            "architecture": self.architecture,
            "mac_addresses": list(self.mac_addresses),
            "first_seen_at": self.install_time,
        }


def split_full_source_name(name: str) -> tuple[str, str]:
    """Split ``Artifact/Source`` into the artifact and source names."""
    parts = name.split("/")
    if len(parts) > 1:
        return parts[0], parts[1]
    return name, ""


def _utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def day_name(now: datetime) -> str:
    """The UTC day of ``now`` as YYYY-MM-DD."""
    now = _utc(now)
    return f"{now.year}-{now.month:02d}-{now.day:02d}"


def get_fs_path_spec(message: VeloMessage, full_artifact_name: str,
                     now: datetime) -> list[str]:
    """Return the result set path components for a response.

    Client events always arrive on the monitoring flow and are split by
    day; everything else is stored under the collection.
    """
    base, source = split_full_source_name(full_artifact_name)

    if message.session_id == MONITORING_WELL_KNOWN_FLOW:
        path = [CLIENTS_ROOT, message.source, "monitoring", base]
        if source:
            path.append(source)
        path.append(day_name(now))
        return path

    path = [CLIENTS_ROOT, message.source, "artifacts", base,
            message.session_id]
    if source:
        path.append(source)
    return path


def _lines(jsonl: str) -> Iterator[str]:
    for line in jsonl.splitlines():
        if line.strip():
            yield line


def _parse_row(line: str) -> dict[str, Any]:
    row = json.loads(line)
    if not isinstance(row, dict):
        raise ValueError(f"Expected a JSON object, got {line!r}")
    return row


def parse_client_info_updates(jsonl: str) -> list[ClientInfoUpdate]:
    """Parse the rows of a client information response."""
    return [ClientInfoUpdate.from_dict(_parse_row(line))
            for line in _lines(jsonl)]


def append_jsonl_item(jsonl: str, key: str, value: Any) -> str:
    """Add ``key: value`` to the end of every JSON object in ``jsonl``."""
    item = f"{json.dumps(key)}:{json.dumps(value)}"
    out = []
    for line in _lines(jsonl):
        line = line.rstrip()
        if not line.endswith("}"):
            out.append(line)
            continue
        body = line[:-1].rstrip()
        if body.endswith("{"):
            out.append(f"{body}{item}}}")
        else:
            out.append(f"{body},{item}}}")
    return "".join(f"{line}\n" for line in out)


def _make_id(item: str) -> str:
    return hashlib.sha1(item.encode("utf-8")).hexdigest()


def _join_components(components: list[str]) -> str:
    return "/" + "/".join(c for c in components if c)


def _jsonl_response(message: VeloMessage) -> str:
    if message.vql_response is None:
        return ""
    return message.vql_response.get("JSONLResponse") or ""


def vfs_list_records(message: VeloMessage,
                     now: datetime) -> list[tuple[str, dict[str, Any]]]:
    """Build the VFS index records for a directory listing response.

    Rows that do not parse or carry no stats are skipped.
    """
    if message.vql_response is None:
        return []

    timestamp = int(_utc(now).timestamp())
    result = []
    for line in _lines(_jsonl_response(message)):
        try:
            row = _parse_row(line)
        except ValueError:
            continue
        stats_row = row.get("Stats")
        if not isinstance(stats_row, dict):
            continue

        accessor = row.get("_Accessor") or "auto"
        components = [message.source, accessor,
                      *(row.get("_Components") or [])]
        doc_id = _make_id(_join_components(components))

        start_idx = int(stats_row.get("start_idx") or 0)
        end_idx = int(stats_row.get("end_idx") or 0)
        stats = {
            "timestamp": timestamp,
            "client_id": message.source,
            "flow_id": message.session_id,
            "total_rows": end_idx - start_idx,
            "artifact": LIST_DIRECTORY_ARTIFACT,
            "start_idx": start_idx,
            "end_idx": end_idx,
        }
        result.append((doc_id, {
            "id": doc_id,
            "client_id": message.source,
            "components": components,
            "downloads": [],
            "data": json.dumps(stats),
        }))
    return result


def vfs_download_records(message: VeloMessage,
                         now: datetime) -> list[tuple[str, dict[str, Any]]]:
    """Build the VFS download records for a file download response.

    Raises ValueError if a row is not valid JSON.
    """
    if message.vql_response is None:
        return []

    mtime = int(_utc(now).timestamp())
    result = []
    for line in _lines(_jsonl_response(message)):
        row = _parse_row(line)
        components = list(row.get("Components") or [])
        if not components:
            continue

        accessor = row.get("Accessor") or "auto"
        row["FSComponents"] = s3_components_for_client_upload(UploadRequest(
            client_id=message.source,
            session_id=message.session_id,
            accessor=accessor,
            components=components,
        ))
        row["mtime"] = mtime

        dir_components = [message.source, accessor, *components[:-1]]
        file_components = [message.source, accessor, *components]
        dir_id = _make_id(_join_components(dir_components))
        file_id = _make_id(_join_components(file_components))

        result.append(("download_" + file_id, {
            "id": dir_id,
            "downloads": [json.dumps(row)],
        }))
    return result


def _rfc3339(now: datetime) -> str:
    return _utc(now).isoformat().replace("+00:00", "Z")


def upload_metadata_rows(message: VeloMessage,
                         now: datetime) -> list[dict[str, Any]]:
    """Rows recording a completed upload (and its index file if sparse).

    Only the final message of an upload produces rows.
    """
    buffer = message.file_buffer
    if not buffer:
        return []
    pathspec = buffer.get("pathspec")
    if not pathspec or not buffer.get("eof"):
        return []

    accessor = pathspec.get("accessor") or ""
    client_components = list(pathspec.get("components") or [])
    components = s3_components_for_client_upload(UploadRequest(
        client_id=message.source,
        session_id=message.session_id,
        accessor=accessor,
        components=client_components,
    ))
    vfs_path = pathspec.get("path") or ""

    def row(path: str, kind: str) -> dict[str, Any]:
        return {
            "Timestamp": int(_utc(now).timestamp()),
            "started": _rfc3339(now),
            "vfs_path": path,
            "_Components": list(components),
            "_Type": kind,
            "file_size": buffer.get("size") or 0,
            "_accessor": accessor,
            "_client_components": list(client_components),
            "uploaded_size": buffer.get("stored_size") or 0,
        }

    rows = [row(vfs_path, "")]
    if buffer.get("is_sparse"):
        rows.append(row(vfs_path + ".idx", "idx"))
    return rows