# cloudvelo

`cloudvelo` holds the decision making of a cloud-hosted endpoint monitoring
server. It decides which clients get which hunts and event tables, and where
each message from a client should be stored. All storage and messaging goes
through plain callables that you supply. The package itself does no I/O apart
from reading a configuration file.

## Modules

- `cloudvelo.config` loads the YAML server configuration together with its
  `Cloud` section. The section is parsed strictly into `ElasticConfiguration`,
  and unknown fields or wrong types raise `ConfigError`. The loader can apply a
  JSON merge patch (`merge_patch`, `ConfigLoader.apply_json_patch`) and can run
  an optional `validator` over the server part. Also here: `Config`, `Tool`,
  `config_from_dict`.
- `cloudvelo.name_mapping` turns client uploads into S3 keys. The client path
  is hashed with SHA-256, and `.idx` is added for index files. See
  `UploadRequest`, `s3_components_for_client_upload`,
  `s3_key_for_client_upload` and `normalized_org_id`.
- `cloudvelo.hunt_stats` collects hunt counters (`HuntStatsUpdater`: scheduled,
  completed, errors) in memory and flushes them as one painless update query
  per hunt. `HuntStatsManager` hands out one updater per hunt. It flushes an
  updater once that updater has been idle for `ttl` seconds, which happens on
  the next `update`, or on `expire_stale`. `purge` flushes everything, and so
  does leaving the manager's `with` block.
- `cloudvelo.models` defines the records and messages: `ClientRecord`, `Hunt`,
  `HuntCondition`, `HuntState`, `OsType`, `ArtifactCollectorArgs`,
  `VQLCollectorArgs`, `ClientEventTable`, `LabelEvents`, `VQLEventTable`,
  `VeloMessage`, `QueryStatus`, `VeloStatus`.
- `cloudvelo.event_monitoring` builds the event table message for a client
  from its labels (`get_client_update_event_table_message`). `labels_key`
  groups clients that receive the same table.
- `cloudvelo.plan` holds the work computed in one run (`Plan`). It sends
  hunts through a launcher and event tables through a messenger, then writes
  the updated client records through a store.
- `cloudvelo.foreman` picks the hunts and table updates for clients that
  pinged after `Foreman.last_run_time`, which is in nanoseconds. It applies
  label, excluded-label and OS conditions, and it skips hunts that are already
  assigned. `get_active_hunts` stops expired hunts.
- `cloudvelo.results` builds result-set paths (`get_fs_path_spec`), VFS index
  records (`vfs_list_records`, `vfs_download_records`) and upload metadata rows
  (`upload_metadata_rows`). It also parses client information rows
  (`parse_client_info_updates`).
- `cloudvelo.ingestor` routes each `VeloMessage` by kind with
  `Ingestor.process`. The kinds are enrolment, logs, results, client events,
  flow statistics, pings and uploads. The module also provides
  `calc_flow_outcome` and `extract_hunt_id`.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Loading a configuration

```python
from cloudvelo.config import ConfigLoader

loader = ConfigLoader(
    filename="server.config.yaml",
    json_patch='{"Cloud": {"bucket": "my-bucket"}}',
)
config = loader.load()
print(config.cloud.bucket, config.org_id)
```

`load` uses `config_text` if it is set and `filename` otherwise. It raises
`ConfigError` if neither is set, if the file cannot be read, or if the YAML or
the patch is invalid.

## Planning hunts and event tables

```python
import time

from cloudvelo.foreman import Foreman
from cloudvelo.models import (
    ArtifactCollectorArgs, ClientEventTable, ClientRecord, Hunt, HuntState)
from cloudvelo.plan import Plan

now_ns = time.time_ns()
foreman = Foreman(last_run_time=now_ns - 600 * 10**9)

clients = [ClientRecord(client_id="C.1", ping=now_ns)]
hunts = [Hunt(
    hunt_id="H.1",
    state=HuntState.RUNNING,
    expires=now_ns // 1000 + 86_400 * 10**6,   # microseconds
    start_request=ArtifactCollectorArgs(artifacts=["Generic.Client.Info"]),
)]
plan = Plan(current_monitoring_state=ClientEventTable(version=1))

foreman.update_plan(
    clients, hunts, plan,
    launcher=lambda request, client_ids: print("hunt", client_ids),
    messenger=lambda message, client_ids: print("events", client_ids),
    store=lambda org_id, index, doc_id, record: print(index, doc_id, record),
)
```

Afterwards, `plan.client_id_to_hunts` maps each client id to the hunts
scheduled for it. `plan.monitoring_tables_to_clients` groups clients by the
event-table labels they carry, for example `"Label1|Label2"`, with `""` for
clients that get only the table that applies to everyone.

## Ingesting messages

```python
from cloudvelo.ingestor import Ingestor
from cloudvelo.models import VeloMessage

ingestor = Ingestor(
    store=lambda org_id, index, doc_id, record: ...,
    update_index=lambda org_id, index, doc_id, query: ...,
    write_results=lambda org_id, path, jsonl, **kw: ...,
)
ingestor.process(VeloMessage.from_dict({
    "session_id": "F.1234",
    "source": "C.1",
    "ForemanCheckin": {},
}))
```

`write_results` is called with the keyword arguments `total_rows`, `start_row`
and `sync`. The `enroll`, `set_client_info`, `hunt_stats` and `clock`
arguments are optional. Messages that need an `enroll` or `set_client_info`
handler which was not given raise `IngestionError`.

## What this package does not do

- It has no command-line program. Nothing runs the foreman on a timer, and
  nothing serves clients over the network.
- It contains no Elastic/OpenSearch client and no S3 file store. Index
  writes, result sets, uploads and message queues are whatever callables you
  pass in.
- It does no certificate handling. Enrolment is handed to your `enroll`
  callable.
- `HuntStatsManager` runs no background thread. Call `expire_stale`
  periodically, or `purge` at shutdown, to flush the counters.