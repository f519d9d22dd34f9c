import string

from cloudvelo.name_mapping import (
    UploadRequest,
    normalized_org_id,
    s3_components_for_client_upload,
    s3_key_for_client_upload,
)

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def make_request(**kwargs):
    values = dict(client_id="C.1", session_id="F.1", accessor="auto",
                  components=["C:", "Windows", "notepad.exe"])
    values.update(kwargs)
    return UploadRequest(**values)


def test_normalized_org_id():
    assert normalized_org_id("") == "root"
    assert normalized_org_id("root") == "root"
    assert normalized_org_id("test") == "test"


def test_components_layout():
    components = s3_components_for_client_upload(make_request())
    assert components[:6] == ["clients", "C.1", "collections", "F.1",
                              "uploads", "auto"]
    assert len(components) == 7
    assert len(components[6]) == 64
    assert set(components[6]) <= set(string.hexdigits.lower())


def test_empty_components_hash_is_sha256_of_empty_string():
    components = s3_components_for_client_upload(make_request(components=[]))
    assert components[-1] == EMPTY_SHA256


def test_index_type_adds_suffix():
    plain = s3_components_for_client_upload(make_request())
    idx = s3_components_for_client_upload(make_request(type="idx"))
    assert idx[-1] == plain[-1] + ".idx"


def test_hash_is_deterministic_and_path_sensitive():
    first = s3_components_for_client_upload(make_request())
    second = s3_components_for_client_upload(make_request())
    other = s3_components_for_client_upload(
        make_request(components=["C:", "Windows", "calc.exe"]))
    assert first == second
    assert first[-1] != other[-1]


def test_components_are_separated_before_hashing():
    joined = s3_components_for_client_upload(make_request(components=["ab"]))
    split = s3_components_for_client_upload(make_request(components=["a", "b"]))
    assert joined[-1] != split[-1]


def test_key_contains_org_prefix():
    request = make_request()
    key = s3_key_for_client_upload("test", request)
    assert key == "/".join(["orgs", "test",
                            *s3_components_for_client_upload(request)])


def test_key_for_default_org_uses_root():
    key = s3_key_for_client_upload("", make_request())
    assert key.startswith("orgs/root/clients/C.1/collections/F.1/uploads/auto/")