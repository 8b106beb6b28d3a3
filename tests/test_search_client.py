"""Search bridge client against a small JSON-RPC echo process."""

from __future__ import annotations

from pathlib import Path
import sys
import textwrap

import pytest

from personal_shopper.search_client import SearchBridgeClient, SearchBridgeError


ECHO_BRIDGE = textwrap.dedent(
    """
    import json
    import sys

    for line in sys.stdin:
        message = json.loads(line)
        if "id" not in message:
            continue
        if message["method"] == "initialize":
            result = {"protocolVersion": message["params"]["protocolVersion"], "capabilities": {}}
            print(json.dumps({"jsonrpc": "2.0", "id": message["id"], "result": result}), flush=True)
            continue
        arguments = message["params"]["arguments"]
        index = arguments["indexName"]
        if index == "broken":
            error = {"code": -32000, "message": "index not found"}
            print(json.dumps({"jsonrpc": "2.0", "id": message["id"], "error": error}), flush=True)
            continue
        if index == "silent":
            continue
        body = {
            "hits": [{"objectID": "1", "name": arguments["searchParams"]["query"], "index": index}],
            "argv": sys.argv[1:],
            "searchParams": arguments["searchParams"],
        }
        result = {"content": [{"type": "text", "text": json.dumps(body)}]}
        print(json.dumps({"jsonrpc": "2.0", "id": message["id"], "result": result}), flush=True)
    """
)


@pytest.fixture
def bridge_script(tmp_path: Path) -> Path:
    path = tmp_path / "echo_bridge.py"
    path.write_text(ECHO_BRIDGE, encoding="utf-8")
    return path


@pytest.fixture
def client_factory(bridge_script: Path):
    created: list[SearchBridgeClient] = []

    def factory(**kwargs) -> SearchBridgeClient:
        client = SearchBridgeClient([sys.executable, str(bridge_script)], **kwargs)
        created.append(client)
        return client

    yield factory
    for client in created:
        client.close()


def test_search_returns_hits(client_factory):
    client = client_factory(timeout_seconds=10)
    response = client.search("shopping_fashion", "red shoes", {"hitsPerPage": 5, "filters": None})

    assert client.connected
    assert response["hits"] == [{"objectID": "1", "name": "red shoes", "index": "shopping_fashion"}]
    assert response["searchParams"] == {"hitsPerPage": 5, "query": "red shoes"}
    assert response["argv"] == []


def test_credentials_are_passed_to_the_process(client_factory):
    client = client_factory(app_id="APP", api_key="KEY", timeout_seconds=10)
    response = client.search("shopping_books", "novel", {})
    assert response["argv"] == ["start-server", "--credentials", "APP:KEY"]


def test_sequential_requests_reuse_the_process(client_factory):
    client = client_factory(timeout_seconds=10)
    client.search("a", "one", {})
    pid = client._process.pid
    assert client.search("b", "two", {})["hits"][0]["name"] == "two"
    assert client._process.pid == pid


def test_error_response_raises(client_factory):
    client = client_factory(timeout_seconds=10)
    with pytest.raises(SearchBridgeError, match="index not found"):
        client.search("broken", "x", {})


def test_silent_bridge_times_out(client_factory):
    client = client_factory(timeout_seconds=1)
    with pytest.raises(SearchBridgeError, match="timed out"):
        client.search("silent", "x", {})


def test_missing_executable_raises():
    client = SearchBridgeClient(["/nonexistent/search-bridge-binary"], timeout_seconds=1)
    with pytest.raises(SearchBridgeError):
        client.search("shopping_fashion", "x", {})
    assert not client.connected


def test_empty_command_rejected():
    with pytest.raises(ValueError):
        SearchBridgeClient([])


def test_close_then_restart(client_factory):
    client = client_factory(timeout_seconds=10)
    client.search("a", "one", {})
    client.close()
    assert not client.connected
    assert client.search("a", "again", {})["hits"][0]["name"] == "again"
