#!/usr/bin/env python3
"""Local control client for the surface-lidfix lid monitor.

lidfixctl talks to the running monitor over its local UNIX socket.

Commands:
  status | enable | disable

  disable keeps the monitor watching the lid but stops it from forcing
  suspend (e.g. while docked with the lid closed); enable turns it back on.

Socket path:
  - default: $XDG_RUNTIME_DIR/surface-lidfix.sock
  - override: --socket PATH or LIDFIX_SOCKET env var
"""

from __future__ import annotations

import argparse
import json
import os
import socket
import sys

from lidfix.doctor import default_control_socket


def _send(sock_path: str, cmd: str) -> dict:
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
        s.settimeout(5.0)
        s.connect(sock_path)
        s.sendall((cmd.strip() + "\n").encode("utf-8"))
        data = b""
        while b"\n" not in data and len(data) < 65536:
            chunk = s.recv(4096)
            if not chunk:
                break
            data += chunk
    line = data.decode("utf-8", errors="replace").strip()
    if not line:
        return {"ok": False, "error": "empty response"}
    try:
        return json.loads(line)
    except ValueError:
        return {"ok": False, "error": "non-json response", "raw": line}


def _default_socket() -> str:
    # A root monitor listens under /run/surface-lidfix; fall back to our own runtime dir.
    system_sock = default_control_socket(euid=0)
    if os.path.exists(system_sock):
        return system_sock
    return default_control_socket()


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Control the surface-lidfix monitor via its local UNIX socket")
    ap.add_argument("command", choices=["status", "enable", "disable"], help="Command to send to the monitor")
    ap.add_argument("--socket", default=os.environ.get("LIDFIX_SOCKET") or _default_socket(),
                    help="Control socket path (default: /run/surface-lidfix/surface-lidfix.sock if present, else $XDG_RUNTIME_DIR/surface-lidfix.sock)")
    ap.add_argument("--json", action="store_true", help="Print raw JSON response")
    args = ap.parse_args(argv)

    try:
        resp = _send(args.socket, args.command)
    except OSError as e:
        print(f"error: cannot reach monitor at {args.socket}: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(resp, indent=2, sort_keys=True))
        return 0 if resp.get("ok") else 2

    if not resp.get("ok"):
        print(f"error: {resp.get('error', 'unknown error')}", file=sys.stderr)
        raw = resp.get("raw")
        if raw:
            print(raw, file=sys.stderr)
        return 2

    if args.command == "status":
        state = resp.get("state", {})
        print(
            f"ok  version={resp.get('version', '')} enabled={state.get('enabled')} lid={state.get('lid')} "
            f"closed_count={state.get('closed_count')}/{resp.get('threshold')} "
            f"suspends={state.get('suspend_attempts')} failures={state.get('suspend_failures')}"
        )
    else:
        print("ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
