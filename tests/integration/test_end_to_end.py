"""End-to-end tests: editor WebSocket, guest process and preview proxy together.

Guests are real processes listening on the session's allocated port.
"""

from __future__ import annotations

import shutil

from collections.abc import Generator
from typing import Any

import pytest

from fastapi.testclient import TestClient

from cloudide.api.main import create_app

pytestmark = pytest.mark.integration

NODE_SERVER = """\
const http = require('http');
const port = process.env.PORT;
http.createServer((req, res) => {
  res.writeHead(200, {'Content-Type': 'text/plain'});
  res.end('node says ' + req.url);
}).listen(port, () => console.log('listening on ' + port));
"""


def _read_until(ws: Any, needle: str) -> str:
    output = ""
    while needle not in output:
        message = ws.receive_json()
        if message["type"] == "output":
            output += message["data"]
        elif message["type"] == "process-exit":
            raise AssertionError(f"guest exited early: {output}")
    return output


@pytest.fixture
def client(test_settings: Any) -> Generator[TestClient, None, None]:
    with TestClient(create_app(test_settings)) as test_client:
        yield test_client


def test_preview_reaches_guest_server(client: TestClient, guest_http_server: str) -> None:
    with client.websocket_connect("/ws") as ws:
        ready = ws.receive_json()
        ws.send_json({"type": "run", "files": {"main.py": guest_http_server}})
        _read_until(ws, f"listening on {ready['port']}")

        response = client.get(f"{ready['preview_path']}index.html?x=1")
        assert response.status_code == 200
        assert response.text == "hello from /index.html?x=1"
        assert response.headers["x-guest-host"] == "testserver"
        assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]

        posted = client.post(ready["preview_path"] + "api", content=b"data")
        assert posted.text == "echo:data"

    # Session gone: the preview path is no longer routed
    assert client.get(ready["preview_path"]).status_code == 404


def test_sessions_are_isolated(client: TestClient, guest_http_server: str) -> None:
    with client.websocket_connect("/ws") as ws1, client.websocket_connect("/ws") as ws2:
        first, second = ws1.receive_json(), ws2.receive_json()
        ws1.send_json({"type": "run", "files": {"main.py": guest_http_server}})
        _read_until(ws1, "listening on")

        assert client.get(first["preview_path"]).status_code == 200
        # Second session has nothing listening on its port
        assert client.get(second["preview_path"]).status_code == 502


def test_second_run_replaces_first(client: TestClient, guest_http_server: str) -> None:
    """The new guest binds the same port once the old one is gone."""
    with client.websocket_connect("/ws") as ws:
        ready = ws.receive_json()
        ws.send_json({"type": "run", "files": {"main.py": guest_http_server}})
        _read_until(ws, "listening on")

        replacement = guest_http_server.replace("hello from", "v2 from")
        ws.send_json({"type": "run", "files": {"main.py": replacement}})
        output = _read_until(ws, "listening on")

        assert "Traceback" not in output
        assert client.get(ready["preview_path"]).text == "v2 from /"


def test_stop_then_preview_unreachable(client: TestClient, guest_http_server: str) -> None:
    with client.websocket_connect("/ws") as ws:
        ready = ws.receive_json()
        ws.send_json({"type": "run", "files": {"main.py": guest_http_server}})
        _read_until(ws, "listening on")

        ws.send_json({"type": "stop"})
        # Stop carries no reply; a follow-up invalid frame proves it was processed
        ws.send_text("{}")
        assert ws.receive_json()["type"] == "error"

        assert client.get(ready["preview_path"]).status_code == 502


@pytest.mark.skipif(shutil.which("node") is None, reason="Node.js not installed")
def test_node_guest(test_settings: Any) -> None:
    settings = test_settings.model_copy(update={"runtime_command": "node", "entry_point": "index.js"})
    with TestClient(create_app(settings)) as client, client.websocket_connect("/ws") as ws:
        ready = ws.receive_json()
        ws.send_json({"type": "run", "files": {"index.js": NODE_SERVER}})
        _read_until(ws, "listening on")

        assert client.get(ready["preview_path"] + "hi").text == "node says /hi"
