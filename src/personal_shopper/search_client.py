"""JSON-RPC 2.0 client for the product-search bridge process.

The bridge is a long-lived subprocess speaking newline-delimited JSON-RPC over
stdin/stdout. It is started lazily on the first search and restarted if it dies.
"""

from __future__ import annotations

from concurrent.futures import Future, TimeoutError as FutureTimeoutError
import itertools
import json
import logging
import subprocess
import threading
from typing import Any


_LOGGER = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "personal-shopper", "version": "0.1.0"}


class SearchBridgeError(RuntimeError):
    pass


class SearchBridgeClient:
    def __init__(
        self,
        command: tuple[str, ...] | list[str],
        *,
        app_id: str = "",
        api_key: str = "",
        timeout_seconds: float = 30.0,
    ) -> None:
        if not command:
            raise ValueError("Search bridge command is empty.")
        self.command = list(command)
        self.app_id = app_id
        self.api_key = api_key
        self.timeout_seconds = max(1.0, float(timeout_seconds))

        self._process: subprocess.Popen | None = None
        self._pending: dict[int, Future] = {}
        self._pending_lock = threading.Lock()
        self._start_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def _spawn_args(self) -> list[str]:
        args = list(self.command)
        if self.app_id and self.api_key:
            args.extend(["start-server", "--credentials", f"{self.app_id}:{self.api_key}"])
        return args

    def start(self) -> None:
        with self._start_lock:
            if self.connected:
                return
            try:
                self._process = subprocess.Popen(
                    self._spawn_args(),
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    bufsize=1,
                )
            except OSError as exc:
                self._process = None
                raise SearchBridgeError(f"Could not start search bridge: {exc}") from exc

            threading.Thread(target=self._read_stdout, args=(self._process,), daemon=True).start()
            threading.Thread(target=self._read_stderr, args=(self._process,), daemon=True).start()

            try:
                response = self._request(
                    "initialize",
                    {
                        "protocolVersion": PROTOCOL_VERSION,
                        "capabilities": {},
                        "clientInfo": CLIENT_INFO,
                    },
                )
                if response is None:
                    raise SearchBridgeError("Search bridge returned an empty initialize response.")
                self._notify("notifications/initialized", {})
            except Exception:
                self.close()
                raise
            _LOGGER.info("Search bridge started (pid %s).", self._process.pid if self._process else "?")

    def close(self) -> None:
        process = self._process
        self._process = None
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
        self._fail_pending(SearchBridgeError("Search bridge was closed."))

    def _fail_pending(self, exc: Exception) -> None:
        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(exc)

    def _read_stdout(self, process: subprocess.Popen) -> None:
        assert process.stdout is not None
        for line in process.stdout:
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except ValueError:
                _LOGGER.warning("Ignoring non-JSON line from search bridge: %s", line[:200])
                continue
            if not isinstance(message, dict) or "id" not in message:
                continue
            with self._pending_lock:
                future = self._pending.pop(message.get("id"), None)
            if future is None or future.done():
                continue
            if message.get("error"):
                error = message["error"]
                detail = error.get("message") if isinstance(error, dict) else error
                future.set_exception(SearchBridgeError(f"Search bridge error: {detail}"))
            else:
                future.set_result(message.get("result"))
        # A reader for a replaced process must not fail the new process's requests.
        if self._process is process:
            self._fail_pending(SearchBridgeError("Search bridge process exited."))

    @staticmethod
    def _read_stderr(process: subprocess.Popen) -> None:
        assert process.stderr is not None
        for line in process.stderr:
            if line.strip():
                _LOGGER.debug("search bridge: %s", line.rstrip())

    def _write(self, payload: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None or process.poll() is not None:
            raise SearchBridgeError("Search bridge is not running.")
        try:
            with self._write_lock:
                process.stdin.write(json.dumps(payload) + "\n")
                process.stdin.flush()
        except (OSError, ValueError) as exc:
            raise SearchBridgeError(f"Could not write to search bridge: {exc}") from exc

    def _notify(self, method: str, params: dict[str, Any]) -> None:
        self._write({"jsonrpc": "2.0", "method": method, "params": params})

    def _request(self, method: str, params: dict[str, Any]) -> Any:
        request_id = next(self._ids)
        future: Future = Future()
        with self._pending_lock:
            self._pending[request_id] = future
        try:
            self._write({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as exc:
            raise SearchBridgeError(
                f"Search bridge request {method} timed out after {int(round(self.timeout_seconds))}s."
            ) from exc
        finally:
            with self._pending_lock:
                self._pending.pop(request_id, None)

    def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        self.start()
        result = self._request("tools/call", {"name": name, "arguments": arguments})
        content = result.get("content") if isinstance(result, dict) else None
        if isinstance(content, list) and content and isinstance(content[0], dict):
            text = content[0].get("text")
            if isinstance(text, str):
                try:
                    return json.loads(text)
                except ValueError:
                    return text
        return result

    def search(self, index_name: str, query: str, params: dict[str, Any]) -> dict[str, Any]:
        search_params = {key: value for key, value in params.items() if value is not None}
        search_params["query"] = query
        response = self.call_tool(
            "searchSingleIndex",
            {
                "applicationId": self.app_id,
                "indexName": index_name,
                "searchParams": search_params,
            },
        )
        if not isinstance(response, dict):
            raise SearchBridgeError(f"Unexpected search response for index {index_name}.")
        hits = response.get("hits")
        return {**response, "hits": hits if isinstance(hits, list) else []}
