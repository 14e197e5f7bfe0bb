"""Build executor - runs ninja on behalf of a wasmc client.

Reads newline-delimited JSON requests on stdin and writes one JSON
response per line on stdout. Output of the build tool is forwarded on
stderr. Exits when stdin is closed.

This file only depends on the standard library so it can be mounted
into a build container and run with the container's python3.

Usage:
    python3 executor.py [--tool ninja]

Requests:
    {"request": "build", "rid": 0, "dir": "build", "targets": ["foo.wasm"], "clean": false}
    {"request": "clean", "rid": 1, "dir": "build"}

Responses:
    {"response": 0, "result": true}
    {"response": 1, "error": {"message": "ninja error", "code": "EBUILD"}}
"""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import IO, Any

NO_WORK_TO_DO = b"ninja: no work to do"


class RequestError(Exception):
    """A request failed; reported back to the client as an error object."""

    def __init__(self, message: str, code: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code, **self.extra}


class Executor:
    """Serves build and clean requests.

    Requests are handled one at a time by a single worker so the build
    tool never runs concurrently in the same tree.
    """

    def __init__(self, tool: str = "ninja", out: IO[bytes] | None = None, log: IO[bytes] | None = None) -> None:
        self.tool = tool
        self.out = out if out is not None else sys.stdout.buffer
        self.log = log if log is not None else sys.stderr.buffer
        self._send_lock = threading.Lock()

    def send(self, msg: dict[str, Any]) -> None:
        data = (json.dumps(msg, separators=(",", ":")) + "\n").encode("utf-8")
        with self._send_lock:
            self.out.write(data)
            self.out.flush()

    def log_line(self, text: str) -> None:
        with self._send_lock:
            self.log.write(text.encode("utf-8") + b"\n")
            self.log.flush()

    def run_tool(self, directory: str, args: list[str]) -> bool:
        """Run the build tool in directory. Returns True if it did any work."""
        if not os.path.isdir(directory):
            raise RequestError(f"{directory} is not a directory", "ENOENT")
        try:
            proc = subprocess.Popen(
                [self.tool, *args],
                cwd=directory,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise RequestError(f"{self.tool}: command not found", "ENOTOOL") from e

        did_work = True
        assert proc.stdout is not None
        for line in proc.stdout:
            if NO_WORK_TO_DO in line:
                did_work = False
            with self._send_lock:
                self.log.write(line)
                self.log.flush()
        status = proc.wait()
        if status != 0:
            raise RequestError("ninja error", "EBUILD", status=status)
        return did_work

    def clean(self, directory: str) -> None:
        self.run_tool(directory, ["-t", "clean"])

    def build(self, directory: str, targets: list[str], clean: bool = False) -> bool:
        if clean:
            self.clean(directory)
        return self.run_tool(directory, list(targets))

    def handle(self, msg: dict[str, Any]) -> dict[str, Any]:
        """Execute one request and return its response."""
        rid = msg.get("rid")
        request = msg.get("request")
        try:
            if request == "build":
                result: Any = self.build(msg["dir"], msg.get("targets") or [], bool(msg.get("clean")))
            elif request == "clean":
                result = self.clean(msg["dir"])
            else:
                return {"response": rid, "error": f"invalid build executor command: {request}"}
        except RequestError as e:
            return {"response": rid, "error": e.to_dict()}
        except KeyError as e:
            return {"response": rid, "error": {"message": f"missing field {e.args[0]!r}", "code": "EINVAL"}}
        return {"response": rid, "result": result}

    def _handle_and_send(self, msg: dict[str, Any]) -> None:
        try:
            response = self.handle(msg)
        except Exception as e:
            response = {"response": msg.get("rid"), "error": {"message": str(e), "code": "EINTERNAL"}}
        self.send(response)

    def serve(self, stdin: IO[bytes]) -> int:
        """Process requests until stdin is closed."""
        with ThreadPoolExecutor(max_workers=1) as pool:
            for raw in stdin:
                line = raw.strip()
                if not line:
                    continue
                try:
                    msg = json.loads(line)
                except (json.JSONDecodeError, UnicodeDecodeError):
                    self.log_line(f"build executor: invalid data: {line[:200]!r}")
                    return 1
                if not isinstance(msg, dict):
                    self.log_line(f"build executor: invalid request: {line[:200]!r}")
                    return 1
                pool.submit(self._handle_and_send, msg)
        return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="wasmc-executor", description="Serve wasmc build requests over stdio")
    parser.add_argument("--tool", default=os.environ.get("WASMC_BUILD_TOOL", "ninja"), help="Build tool to run")
    args = parser.parse_args(argv)
    return Executor(tool=args.tool).serve(sys.stdin.buffer)


if __name__ == "__main__":
    sys.exit(main())
