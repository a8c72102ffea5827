"""Tests for IPFS storage with gateway fallback."""

from __future__ import annotations

import pytest
import requests

from blob_store import IpfsBlobStore, MemoryBlobStore
from errors import StorageUnreachable

GATEWAYS = ("http://127.0.0.1:8080", "https://ipfs.io", "https://cloudflare-ipfs.com")
CID = "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG"
BLOB = b'{"iv": "AAAAAAAAAAAAAAAA", "ciphertext": "AAAA"}'


def _response(mocker, status=200, content=b"", payload=None):
    response = mocker.Mock()
    response.ok = status < 400
    response.status_code = status
    response.content = content
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(str(status))
    return response


@pytest.fixture
def http(mocker):
    return mocker.Mock()


@pytest.fixture
def store(http):
    return IpfsBlobStore("http://127.0.0.1:5001/", GATEWAYS, timeout=8.0, session=http)


def test_put_returns_cid(mocker, http, store) -> None:
    http.post.return_value = _response(mocker, payload={"Name": "file", "Hash": CID})

    assert store.put(b"{}") == CID
    http.post.assert_called_once_with(
        "http://127.0.0.1:5001/api/v0/add", files={"file": b"{}"}, timeout=8.0
    )


def test_put_failure(mocker, http, store) -> None:
    http.post.return_value = _response(mocker, status=500)

    with pytest.raises(StorageUnreachable):
        store.put(b"{}")


def test_put_unreachable(http, store) -> None:
    http.post.side_effect = requests.exceptions.ConnectionError("refused")

    with pytest.raises(StorageUnreachable):
        store.put(b"{}")


def test_get_falls_through_gateways_in_order(mocker, http, store) -> None:
    http.get.side_effect = [
        requests.exceptions.ConnectTimeout("local node down"),
        _response(mocker, status=404),
        _response(mocker, content=BLOB),
    ]

    assert store.get(CID) == BLOB

    urls = [c.args[0] for c in http.get.call_args_list]
    assert urls == [f"{g}/ipfs/{CID}" for g in GATEWAYS]
    assert all(c.kwargs["timeout"] == 8.0 for c in http.get.call_args_list)


def test_first_success_wins(mocker, http, store) -> None:
    http.get.return_value = _response(mocker, content=BLOB)

    assert store.get(CID) == BLOB
    assert http.get.call_count == 1


def test_html_served_with_200_falls_through(mocker, http, store) -> None:
    http.get.side_effect = [
        _response(mocker, content=b"<html><body>Rate limited</body></html>"),
        _response(mocker, content=b"[1, 2]"),
        _response(mocker, content=BLOB),
    ]

    assert store.get(CID) == BLOB
    assert http.get.call_count == 3


def test_all_gateways_failing(mocker, http, store) -> None:
    http.get.return_value = _response(mocker, status=504)

    with pytest.raises(StorageUnreachable):
        store.get(CID)
    assert http.get.call_count == len(GATEWAYS)


def test_no_gateway_serving_json(mocker, http, store) -> None:
    http.get.return_value = _response(mocker, content=b"\xff\xfe not json")

    with pytest.raises(StorageUnreachable):
        store.get(CID)
    assert http.get.call_count == len(GATEWAYS)


def test_memory_store() -> None:
    store = MemoryBlobStore()
    cid = store.put(b"payload")

    assert store.get(cid) == b"payload"
    assert store.put(b"payload") == cid
    with pytest.raises(StorageUnreachable):
        store.get("missing")
