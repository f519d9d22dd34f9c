import json
from datetime import datetime, timezone

import pytest

from cloudvelo.hunt_stats import HuntStatsManager
from cloudvelo.ingestor import (
    IngestionError,
    Ingestor,
    calc_flow_outcome,
    extract_hunt_id,
)
from cloudvelo.models import QueryStatus, VeloMessage, VeloStatus
from cloudvelo.results import (
    append_jsonl_item,
    day_name,
    parse_client_info_updates,
    split_full_source_name,
    upload_metadata_rows,
)

NOW = datetime(2022, 8, 25, 1, 30, tzinfo=timezone.utc)


class Recorder:
    def __init__(self):
        self.stored = []
        self.updates = []
        self.written = []
        self.enrolled = []
        self.client_infos = []
        self.hunt_updates = []

    def store(self, org_id, index, doc_id, record):
        self.stored.append((org_id, index, doc_id, record))

    def update_index(self, org_id, index, doc_id, query):
        self.updates.append((org_id, index, doc_id, query))

    def write(self, org_id, path, jsonl, total_rows, start_row, sync):
        self.written.append({"org_id": org_id, "path": path, "jsonl": jsonl,
                             "total_rows": total_rows, "start_row": start_row,
                             "sync": sync})

    def enroll(self, org_id, pem):
        self.enrolled.append((org_id, pem))
        return "C.new"

    def set_client_info(self, org_id, info):
        self.client_infos.append((org_id, info))


@pytest.fixture
def rec():
    return Recorder()


@pytest.fixture
def hunt_stats(rec):
    return HuntStatsManager(
        "test", lambda *a: rec.hunt_updates.append(a), ttl=100.0,
        clock=lambda: 0.0)


@pytest.fixture
def ingestor(rec, hunt_stats):
    return Ingestor(rec.store, rec.update_index, rec.write,
                    enroll=rec.enroll, set_client_info=rec.set_client_info,
                    hunt_stats=hunt_stats, clock=lambda: NOW)


def response(name, jsonl="", vql="", total=0, start=0):
    return {"Query": {"Name": name, "VQL": vql}, "JSONLResponse": jsonl,
            "TotalRows": total, "QueryStartRow": start}


def test_extract_hunt_id():
    assert extract_hunt_id("F.1234.H") == "H.1234"
    assert extract_hunt_id("F.1234") is None
    assert extract_hunt_id("F.Monitoring") is None


def test_calc_flow_outcome():
    assert calc_flow_outcome([QueryStatus(VeloStatus.OK),
                              QueryStatus(VeloStatus.PROGRESS)]) == (False, False)
    assert calc_flow_outcome([QueryStatus(VeloStatus.GENERIC_ERROR),
                              QueryStatus(VeloStatus.OK)]) == (True, True)
    assert calc_flow_outcome([]) == (False, True)


def test_enrolment(ingestor, rec):
    msg = VeloMessage(source="C.1", org_id="test", authenticated=False,
                      csr={"pem": "PEM DATA"})
    ingestor.process(msg)
    assert rec.enrolled == [("test", "PEM DATA")]
    assert ingestor.handle_enrolment(msg) == "C.new"


def test_enrolment_without_handler(rec):
    ing = Ingestor(rec.store, rec.update_index, rec.write)
    msg = VeloMessage(authenticated=False, csr={"pem": "x"})
    with pytest.raises(IngestionError):
        ing.process(msg)


def test_enrolment_error_propagates(rec):
    def bad(org_id, pem):
        raise ValueError("bad csr")
    ing = Ingestor(rec.store, rec.update_index, rec.write, enroll=bad)
    with pytest.raises(ValueError):
        ing.handle_enrolment(VeloMessage(authenticated=False, csr={"pem": "x"}))


def test_logs_empty_raises(ingestor):
    msg = VeloMessage(source="C.1", session_id="F.1", log_message={"jsonl": ""})
    with pytest.raises(IngestionError):
        ingestor.process(msg)


def test_logs_written(ingestor, rec):
    msg = VeloMessage(source="C.1", session_id="F.1", org_id="test",
                      urgent=True,
                      log_message={"jsonl": '{"a":1}\n', "id": 5,
                                   "number_of_rows": 1})
    ingestor.process(msg)
    # Not a hunt flow, so nothing goes to the hunt_flows index.
    assert extract_hunt_id(msg.session_id) is None
    assert rec.stored == []
    [w] = rec.written
    assert w["path"][:4] == ["clients", "C.1", "collections", "F.1"]
    assert w["start_row"] == 5
    assert w["sync"] is True
    assert w["jsonl"] == '{"a":1}\n'


def test_monitoring_log_suppressed(ingestor, rec):
    msg = VeloMessage(source="C.1", session_id="F.Monitoring",
                      log_message={"artifact": "Client.Info.Updates",
                                   "jsonl": "{}\n"})
    ingestor.process(msg)
    assert split_full_source_name("Client.Info.Updates") == \
        ("Client.Info.Updates", "")
    assert rec.written == []


def test_monitoring_responses_tagged(ingestor, rec):
    msg = VeloMessage(source="C.1", session_id="F.Monitoring",
                      vql_response=response("Generic.Client.Stats",
                                            '{"x":1}\n', total=1))
    ingestor.process(msg)
    expected_day = day_name(NOW)
    assert expected_day == "2022-08-25"
    tagged = append_jsonl_item('{"x":1}\n', "ClientId", "C.1")
    assert json.loads(tagged) == {"x": 1, "ClientId": "C.1"}
    [w] = rec.written
    assert json.loads(w["jsonl"]) == json.loads(tagged)
    assert w["path"][-1] == expected_day
    assert w["path"][2] == "monitoring"


def test_client_info_updates(ingestor, rec):
    row = {"Hostname": "host", "OS": "linux", "Architecture": "amd64",
           "InstallTime": 7}
    jsonl = json.dumps(row) + "\n"
    msg = VeloMessage(source="C.1", session_id="F.Monitoring", org_id="test",
                      vql_response=response("Server.Internal.ClientInfo",
                                            jsonl))
    ingestor.process(msg)
    parsed = parse_client_info_updates(jsonl)
    assert len(parsed) == 1
    assert len(rec.client_infos) == len(parsed)
    [(org, info)] = rec.client_infos
    assert org == "test"
    assert info["client_id"] == "C.1"
    assert info["fqdn"] == "host"
    assert info["system"] == "linux"
    assert rec.written == []


def test_interrogation_updates_client(ingestor, rec):
    msg = VeloMessage(source="C.1", session_id="F.9", org_id="test",
                      vql_response=response(
                          "Generic.Client.Info/BasicInformation", "{}\n"))
    ingestor.process(msg)
    base, source = split_full_source_name(
        "Generic.Client.Info/BasicInformation")
    assert (base, source) == ("Generic.Client.Info", "BasicInformation")
    [(org, index, doc_id, query)] = rec.updates
    assert (org, index, doc_id) == ("test", "clients", "C.1")
    assert json.loads(query)["script"]["params"]["last_interrogate"] == "F.9"
    assert rec.written[0]["path"][-1] == source


def test_response_without_name_ignored(ingestor, rec):
    msg = VeloMessage(source="C.1", session_id="F.1",
                      vql_response={"JSONLResponse": "{}\n"})
    result = ingestor.process(msg)
    assert result is None
    assert extract_hunt_id(msg.session_id) is None
    assert rec.written == []


def test_hunt_response_schedules(ingestor, rec, hunt_stats):
    msg = VeloMessage(source="C.1", session_id="F.77.H", org_id="test",
                      vql_response=response("Log", vql="Starting Hunt"))
    ingestor.process(msg)
    hunt_flows = [s for s in rec.stored if s[1] == "hunt_flows"]
    assert len(hunt_flows) == 1
    assert hunt_flows[0][3]["hunt_id"] == extract_hunt_id("F.77.H")
    assert hunt_flows[0][3]["status"] == "started"
    assert hunt_stats.update(extract_hunt_id("F.77.H")).scheduled == 1


def test_flow_stats_completed_hunt(ingestor, rec, hunt_stats):
    msg = VeloMessage(source="C.1", session_id="F.5.H", org_id="test",
                      flow_stats={"total_collected_rows": 3,
                                  "query_status": [{"status": 0}]})
    ingestor.process(msg)
    [(org, index, doc_id, record)] = rec.stored
    assert index == "collections"
    assert doc_id.endswith("completed")
    assert record["total_collected_rows"] == 3
    assert record["type"] == "stats"
    assert hunt_stats.update("H.5").completed == 1


def test_flow_stats_in_progress(ingestor, rec, hunt_stats):
    msg = VeloMessage(source="C.1", session_id="F.5.H",
                      flow_stats={"query_status": [{"status": "PROGRESS"}]})
    ingestor.process(msg)
    assert rec.stored[0][2].endswith("stats")
    updater = hunt_stats.update("H.5")
    assert (updater.completed, updater.errors) == (0, 0)


def test_flow_stats_failed(ingestor, hunt_stats):
    msg = VeloMessage(source="C.1", session_id="F.6.H",
                      flow_stats={"query_status": [{"status": 1}]})
    ingestor.process(msg)
    assert hunt_stats.update("H.6").errors == 1


def test_ping(ingestor, rec):
    msg = VeloMessage(source="C.1", session_id="F.1", org_id="test",
                      foreman_checkin={})
    ingestor.process(msg)
    assert extract_hunt_id(msg.session_id) is None
    [(org, index, doc_id, record)] = rec.stored
    assert (index, doc_id) == ("clients", "C.1_ping")
    assert record["type"] == "ping"
    assert record["ping"] == int(NOW.timestamp()) * 10**9


def test_ping_missing_document_ignored(rec):
    def store(*args):
        raise RuntimeError("document_missing_exception")
    ing = Ingestor(store, rec.update_index, rec.write, clock=lambda: NOW)
    ing.handle_ping(VeloMessage(source="C.1"))

    def failing(*args):
        raise RuntimeError("boom")
    ing = Ingestor(failing, rec.update_index, rec.write, clock=lambda: NOW)
    with pytest.raises(RuntimeError):
        ing.handle_ping(VeloMessage(source="C.1"))


def test_uploads_sparse(ingestor, rec):
    msg = VeloMessage(source="C.1", session_id="F.1",
                      file_buffer={"eof": True, "is_sparse": True,
                                   "upload_number": 2, "size": 10,
                                   "pathspec": {"path": "/a", "accessor": "file",
                                                "components": ["a"]}})
    ingestor.process(msg)
    expected_rows = upload_metadata_rows(msg, NOW)
    assert [r["vfs_path"] for r in expected_rows] == ["/a", "/a.idx"]
    [w] = rec.written
    rows = [json.loads(line) for line in w["jsonl"].splitlines()]
    assert [r["vfs_path"] for r in rows] == ["/a", "/a.idx"]
    assert w["start_row"] == 2
    assert w["total_rows"] == len(expected_rows)


def test_uploads_not_eof(ingestor, rec):
    msg = VeloMessage(source="C.1", session_id="F.1",
                      file_buffer={"eof": False,
                                   "pathspec": {"path": "/a"}})
    result = ingestor.process(msg)
    assert result is None
    assert extract_hunt_id(msg.session_id) is None
    assert rec.written == []
    assert rec.stored == []