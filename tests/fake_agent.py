"""Stand-in agent CLI speaking Claude's stream-json on stdin/stdout.

FAKE_AGENT_MODE:
  result      read the prompt, answer with FAKE_AGENT_RESULT, exit 0
  wait_input  read the prompt, announce it is waiting, answer with the next user message
  fail        write to stderr and exit 3 without a result
  hang        read the prompt, record pid and tunnel path in FAKE_AGENT_PID_FILE, never finish
"""
import json
import os
import sys
import time


def _out(obj) -> None:
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()


def _read_user_text() -> str:
    line = sys.stdin.readline()
    if not line:
        return ""
    try:
        obj = json.loads(line)
        return str(obj["message"]["content"][0]["text"])
    except (ValueError, KeyError, IndexError, TypeError):
        return line.strip()


def _say(text: str) -> None:
    _out({"type": "assistant", "message": {"role": "assistant", "content": [{"type": "text", "text": text}]}})


def _result(text: str) -> None:
    _out({"type": "result", "subtype": "success", "result": text, "session_id": "fake", "num_turns": 1})


def main() -> int:
    mode = os.environ.get("FAKE_AGENT_MODE", "result")
    _out({"type": "system", "subtype": "init", "session_id": "fake", "model": "fake", "tools": []})
    if mode == "fail":
        sys.stderr.write("boom\n")
        sys.stderr.flush()
        return 3

    prompt = _read_user_text()
    if mode == "hang":
        target = os.environ["FAKE_AGENT_PID_FILE"]
        with open(target + ".tmp", "w", encoding="utf-8") as f:
            json.dump({"pid": os.getpid(), "socket": os.environ.get("OUTPUT_SOCKET_PATH", "")}, f)
        os.replace(target + ".tmp", target)
        _say("working on it")
        while True:
            time.sleep(1)

    if mode == "wait_input":
        _say("waiting for input")
        reply = _read_user_text()
        _result(f"got: {reply}")
        return 0

    _say(f"prompt had {len(prompt)} chars")
    _result(os.environ.get("FAKE_AGENT_RESULT", "OK: tests added"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
