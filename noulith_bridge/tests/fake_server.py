"""Scriptable language server used by the bridge tests.

Speaks Content-Length framed JSON-RPC over stdio. Behaviour is selected by
command-line flags and by the ``x/*`` methods the tests call:

    --notify-before-init   send notifications before the initialize response
    --init-error           answer initialize with an error
    --hang-init            never answer initialize
    --exit-on-init         exit as soon as initialize arrives
    --ignore-term          ignore SIGTERM (forces the client to kill)
    --ignore-exit          keep running after the exit notification
    --stderr               write a line to stderr at startup

    x/ping            -> {"echo": params}
    x/error           -> error -32000
    x/never           -> no answer
    x/crash           -> process exits without answering
    x/hold            -> answered only when x/release arrives, newest first
    x/release         -> releases held requests, then {"released": n}
    x/notifyMe        -> sends x/event with params, then answers
    x/serverRequest   -> sends a request to the client, answers with its reply
    x/garbage         -> writes an undecodable frame, then answers
    x/unknownId       -> answers id 9999 first, then the real id
    x/received        -> list of notifications received so far
"""

import json
import os
import signal
import sys


def read_frame(stream):
    headers = {}
    while True:
        line = stream.readline()
        if not line:
            return None
        line = line.decode("ascii").strip()
        if not line:
            if headers:
                break
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()
    return stream.read(int(headers["content-length"]))


def write_raw(stream, payload):
    stream.write(b"Content-Length: %d\r\n\r\n" % len(payload) + payload)
    stream.flush()


def write(stream, obj):
    write_raw(stream, json.dumps(obj).encode("utf-8"))


def result(msg_id, value):
    return {"jsonrpc": "2.0", "id": msg_id, "result": value}


def main(argv):
    opts = set(argv[1:])
    if "--ignore-term" in opts:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    if "--stderr" in opts:
        sys.stderr.write("fake server starting\n")
        sys.stderr.flush()

    stdin, stdout = sys.stdin.buffer, sys.stdout.buffer
    received = []
    held = []

    while True:
        raw = read_frame(stdin)
        if raw is None:
            return 0
        msg = json.loads(raw)
        method = msg.get("method")
        msg_id = msg.get("id")

        if method is None:
            continue

        if msg_id is None:
            received.append({"method": method, "params": msg.get("params")})
            if method == "exit" and "--ignore-exit" not in opts:
                return 0
            continue

        if method == "initialize":
            if "--exit-on-init" in opts:
                return 3
            if "--hang-init" in opts:
                continue
            if "--init-error" in opts:
                write(stdout, {"jsonrpc": "2.0", "id": msg_id,
                               "error": {"code": -32002, "message": "cannot initialize"}})
                continue
            if "--notify-before-init" in opts:
                write(stdout, {"jsonrpc": "2.0", "method": "x/early", "params": {"n": 1}})
                write(stdout, {"jsonrpc": "2.0", "method": "x/early", "params": {"n": 2}})
            write(stdout, result(msg_id, {
                "capabilities": {
                    "textDocumentSync": 1,
                    "semanticTokensProvider": {"full": True},
                },
                "serverInfo": {"name": "fake-server", "version": "1.0"},
            }))
        elif method == "shutdown":
            write(stdout, result(msg_id, None))
        elif method == "x/ping":
            write(stdout, result(msg_id, {"echo": msg.get("params")}))
        elif method == "x/error":
            write(stdout, {"jsonrpc": "2.0", "id": msg_id,
                           "error": {"code": -32000, "message": "requested failure", "data": {"why": "test"}}})
        elif method == "x/never":
            continue
        elif method == "x/crash":
            stdout.flush()
            os._exit(1)
        elif method == "x/hold":
            held.append((msg_id, msg.get("params")))
        elif method == "x/release":
            count = len(held)
            for held_id, params in reversed(held):
                write(stdout, result(held_id, {"held": params}))
            held = []
            write(stdout, result(msg_id, {"released": count}))
        elif method == "x/notifyMe":
            write(stdout, {"jsonrpc": "2.0", "method": "x/event", "params": msg.get("params")})
            write(stdout, result(msg_id, "notified"))
        elif method == "x/serverRequest":
            write(stdout, {"jsonrpc": "2.0", "id": "srv-1", "method": "workspace/configuration",
                           "params": {"items": []}})
            reply = json.loads(read_frame(stdin))
            write(stdout, result(msg_id, {"reply": reply}))
        elif method == "x/garbage":
            write_raw(stdout, b"{not json")
            write(stdout, result(msg_id, "after-garbage"))
        elif method == "x/unknownId":
            write(stdout, result(9999, "stray"))
            write(stdout, result(msg_id, "real"))
        elif method == "x/received":
            write(stdout, result(msg_id, received))
        else:
            write(stdout, {"jsonrpc": "2.0", "id": msg_id,
                           "error": {"code": -32601, "message": f"Unhandled method {method}"}})


if __name__ == "__main__":
    sys.exit(main(sys.argv))
