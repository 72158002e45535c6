"""Scripted stand-in for the backend CLI, speaking JSON-RPC over stdio.

Prompt text selects the behaviour:
    "settings"    reply with the session/new settings as JSON text
    "permission"  ask for permission first, reply with the outcome we got
    "fs"          call an fs method first, reply with the error code we got
    "fail"        answer the prompt with a JSON-RPC error
    "malformed"   send non-object update and result payloads
    "crash"       exit without answering
    "silent"      never answer
    anything else reply "echo: <text>" in two chunks
"""

import json
import sys

state = {"settings": None, "model": None}


def send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def chunk(session_id, text, kind="agent_message_chunk"):
    send({
        "jsonrpc": "2.0",
        "method": "session/update",
        "params": {
            "sessionId": session_id,
            "update": {"sessionUpdate": kind, "content": {"type": "text", "text": text}},
        },
    })


def ask(method, params):
    send({"jsonrpc": "2.0", "id": "agent-1", "method": method, "params": params})
    return json.loads(sys.stdin.readline())


def handle_prompt(req_id, params):
    sid = params["sessionId"]
    text = params["prompt"][0]["text"]
    if text == "crash":
        sys.exit(3)
    if text == "silent":
        return
    if text == "malformed":
        send({"jsonrpc": "2.0", "method": "session/update", "params": {"sessionId": sid, "update": "oops"}})
        send({"jsonrpc": "2.0", "method": "session/update", "params": ["not", "an", "object"]})
        send({
            "jsonrpc": "2.0",
            "method": "session/update",
            "params": {"sessionId": sid, "update": {"sessionUpdate": "agent_message_chunk", "content": "raw"}},
        })
        chunk(sid, "still here")
        send({"jsonrpc": "2.0", "id": req_id, "result": "done"})
        return
    if text == "fail":
        send({"jsonrpc": "2.0", "id": req_id, "error": {"code": -32000, "message": "prompt rejected"}})
        return
    if text == "settings":
        chunk(sid, json.dumps({"settings": state["settings"], "model": state["model"]}))
    elif text == "permission":
        reply = ask("session/request_permission", {"sessionId": sid, "options": []})
        chunk(sid, reply["result"]["outcome"]["outcome"])
    elif text == "fs":
        reply = ask("fs/read_text_file", {"sessionId": sid, "path": "/etc/passwd"})
        chunk(sid, str(reply["error"]["code"]))
    else:
        chunk(sid, "thinking...", kind="agent_thought_chunk")
        chunk(sid, "echo: ")
        chunk(sid, text)
    send({"jsonrpc": "2.0", "id": req_id, "result": {"stopReason": "end_turn"}})


def main():
    # Banner lines on stdout must be tolerated by the client.
    print("fake agent starting", flush=True)
    sys.stderr.write("fake agent stderr line\n")
    sys.stderr.flush()
    for line in sys.stdin:
        msg = json.loads(line)
        method, req_id, params = msg.get("method"), msg.get("id"), msg.get("params") or {}
        if method == "initialize":
            send({"jsonrpc": "2.0", "id": req_id, "result": {"protocolVersion": 1}})
        elif method == "session/new":
            if params["settings"].get("permission_mode") == "reject-me":
                send({"jsonrpc": "2.0", "id": req_id, "error": {"code": -32602, "message": "bad settings"}})
                continue
            state["settings"] = params["settings"]
            send({"jsonrpc": "2.0", "id": req_id, "result": {"sessionId": "sess-1"}})
        elif method == "session/set_model":
            if params["modelId"] == "no-such-model":
                send({"jsonrpc": "2.0", "id": req_id, "error": {"code": -32602, "message": "unknown model"}})
                continue
            state["model"] = params["modelId"]
            send({"jsonrpc": "2.0", "id": req_id, "result": {}})
        elif method == "session/prompt":
            handle_prompt(req_id, params)


if __name__ == "__main__":
    main()
