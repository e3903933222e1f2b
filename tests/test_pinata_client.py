from __future__ import annotations

import json

import pytest

from mintkit.errors import UploadError, UploadFailure
from mintkit.storage.http import HttpResponse, HttpTransportError
from mintkit.storage.pinata import PinataClient
from mintkit.testing.fakes import CID_V0, CID_V1, FakeTransport, json_response, pin_ok

API = "https://pinata.test"
PIN_FILE = f"{API}/pinning/pinFileToIPFS"
PIN_JSON = f"{API}/pinning/pinJSONToIPFS"


def _client(t: FakeTransport, jwt: str = "jwt-token") -> PinataClient:
    return PinataClient(jwt=jwt, api_base=API, timeout_s=2.0, transport=t)


def test_pin_file_sends_bearer_multipart_and_metadata() -> None:
    t = FakeTransport().add("POST", PIN_FILE, pin_ok(CID_V0, 5))
    res = _client(t).pin_file(filename="cat.png", content=b"\x89PNG!", content_type="image/png", keyvalues={"kind": "asset"})

    assert res.cid == CID_V0
    assert res.size_bytes == 5

    (call,) = t.calls
    assert call["method"] == "POST"
    assert call["headers"]["Authorization"] == "Bearer jwt-token"
    assert call["headers"]["Content-Type"].startswith("multipart/form-data; boundary=")
    body = call["body"]
    assert b'name="file"; filename="cat.png"' in body
    assert b"\x89PNG!" in body
    assert b'name="pinataMetadata"' in body
    assert b'"kind": "asset"' in body
    assert b'name="pinataOptions"' in body


def test_pin_json_wraps_content() -> None:
    t = FakeTransport().add("POST", PIN_JSON, pin_ok(CID_V1))
    res = _client(t).pin_json({"name": "Cat"}, name="cat-metadata.json")
    assert res.cid == CID_V1

    payload = json.loads(t.calls[0]["body"])
    assert payload["pinataContent"] == {"name": "Cat"}
    assert payload["pinataMetadata"]["name"] == "cat-metadata.json"
    assert "pinataOptions" in payload


@pytest.mark.parametrize(
    "answer,kind",
    [
        (HttpResponse(status=401, body=b"unauthorized"), UploadFailure.AUTH_FAILURE),
        (HttpResponse(status=403, body=b"forbidden"), UploadFailure.AUTH_FAILURE),
        (HttpResponse(status=500, body=b"boom"), UploadFailure.NETWORK_FAILURE),
        (HttpResponse(status=503), UploadFailure.NETWORK_FAILURE),
        (HttpTransportError("connection refused"), UploadFailure.NETWORK_FAILURE),
        (HttpResponse(status=400, body=b"bad request"), UploadFailure.INVALID_RESPONSE),
        (HttpResponse(status=200, body=b"<html>not json</html>"), UploadFailure.INVALID_RESPONSE),
        (json_response(["not", "an", "object"]), UploadFailure.INVALID_RESPONSE),
        (json_response({"PinSize": 1}), UploadFailure.INVALID_RESPONSE),
        (json_response({"IpfsHash": "Qm-not-valid"}), UploadFailure.INVALID_RESPONSE),
    ],
)
def test_failures_are_normalized(answer, kind: UploadFailure) -> None:
    t = FakeTransport().add("POST", PIN_FILE, answer)
    with pytest.raises(UploadError) as ei:
        _client(t).pin_file(filename="a.bin", content=b"x", content_type="application/octet-stream")
    assert ei.value.kind == kind
    assert ei.value.to_json()["details"]["kind"] == kind.value


def test_missing_credentials_fail_without_a_request() -> None:
    t = FakeTransport()
    with pytest.raises(UploadError) as ei:
        _client(t, jwt="  ").pin_json({"a": 1})
    assert ei.value.kind == UploadFailure.AUTH_FAILURE
    assert ei.value.reason == "missing_credentials"
    assert t.calls == []


def test_authentication_probe() -> None:
    t = FakeTransport().add("GET", f"{API}/data/testAuthentication", json_response({"message": "Congratulations!"}))
    assert _client(t).test_authentication() is True

    t2 = FakeTransport().add("GET", f"{API}/data/testAuthentication", HttpResponse(status=401))
    with pytest.raises(UploadError) as ei:
        _client(t2).test_authentication()
    assert ei.value.kind == UploadFailure.AUTH_FAILURE
