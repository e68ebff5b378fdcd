"""File operations behind the builtin file tools.

The none strategy calls perform() in a worker thread. Every other strategy
runs this module's source with a Python interpreter inside its isolation:
one JSON request on stdin, one JSON reply on stdout. Standard library only,
since the interpreter may be a container's.

Requests carry an absolute `path` already resolved against the scope, the
model's `raw_path` for messages, and `scope` for relative listings.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path


def _error(code, message):
    return {"error_code": code, "message": message}


def _read(request):
    raw_path = request["raw_path"]
    target = Path(request["path"])
    if not target.is_file():
        return _error("FILE_NOT_FOUND", f"File not found: {raw_path}")

    max_bytes = request["max_bytes"]
    try:
        size = target.stat().st_size
        if size > max_bytes:
            return _error("FILE_TOO_LARGE", f"File is {size} bytes; limit is {max_bytes}")
        content = target.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return _error("NOT_TEXT", f"File is not valid UTF-8 text: {raw_path}")
    except OSError as e:
        return _error("READ_ERROR", f"Failed to read file: {e}")
    return {"content": content, "path": raw_path, "size": len(content)}


def _write(request):
    raw_path = request["raw_path"]
    target = Path(request["path"])
    content = request["content"]
    if target.is_dir():
        return _error("IS_A_DIRECTORY", f"Path is a directory: {raw_path}")

    existed = target.exists()
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a" if request.get("append") else "w", encoding="utf-8") as f:
            f.write(content)
    except OSError as e:
        return _error("WRITE_ERROR", f"Failed to write file: {e}")
    return {
        "path": raw_path,
        "bytes_written": len(content.encode("utf-8")),
        "created": not existed,
    }


def _delete(request):
    raw_path = request["raw_path"]
    target = Path(request["path"])
    if target == Path(request["scope"]) or target.is_dir():
        return _error("IS_A_DIRECTORY", f"Refusing to delete directory: {raw_path}")
    if not target.exists():
        return _error("FILE_NOT_FOUND", f"File not found: {raw_path}")
    try:
        target.unlink()
    except OSError as e:
        return _error("DELETE_ERROR", f"Failed to delete file: {e}")
    return {"path": raw_path, "deleted": True}


def _list(request):
    raw_path = request["raw_path"]
    target = Path(request["path"])
    if not target.is_dir():
        return _error("NOT_A_DIRECTORY", f"Not a directory: {raw_path}")

    scope = Path(request["scope"])
    max_entries = request["max_entries"]
    entries = []
    truncated = False
    for child in sorted(target.glob("**/*" if request.get("recursive") else "*")):
        if len(entries) >= max_entries:
            truncated = True
            break
        rel = child.relative_to(scope).as_posix()
        entries.append(rel + "/" if child.is_dir() else rel)
    return {"path": raw_path, "entries": entries, "truncated": truncated}


OPERATIONS = {
    "read": _read,
    "write": _write,
    "delete": _delete,
    "list": _list,
}


def perform(request: dict) -> dict:
    """Run one file operation and return the tool's reply dict."""
    handler = OPERATIONS.get(request.get("op"))
    if handler is None:
        return _error("INVALID_ARGS", f"Unknown file operation: {request.get('op')!r}")
    return handler(request)


def main() -> None:
    reply = perform(json.load(sys.stdin))
    json.dump(reply, sys.stdout)


if __name__ == "__main__":
    main()
