from __future__ import annotations

import os
from pathlib import Path

import pytest

import codex_mcp_server as cm


# Speaks enough of `codex exec --json` for the bridge. The first word of the
# prompt selects a behaviour; anything else echoes argv back in an agent_message.
# The __orphan__ family leaves a helper behind and reports its pid as a
# "fake.helper" event.
_FAKE_CODEX_SCRIPT = """#!/usr/bin/env python3
import json
import os
import signal
import subprocess
import sys
import tempfile
import time

# Sleeps in codex's process group after codex exits; "stubborn" ignores SIGTERM.
HELPER = (
    "import signal, sys, time; "
    "sys.argv[1] == 'stubborn' and signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "open(sys.argv[2], 'w').close(); "
    "time.sleep(30)"
)


def spawn_helper(mode, detached):
    ready = os.path.join(tempfile.mkdtemp(), "ready")
    out = subprocess.DEVNULL if detached else None
    helper = subprocess.Popen([sys.executable, "-c", HELPER, mode, ready], stdout=out, stderr=out)
    deadline = time.time() + 10
    while not os.path.exists(ready) and time.time() < deadline:
        time.sleep(0.01)
    emit({"type": "fake.helper", "pid": helper.pid})


def emit(event):
    sys.stdout.write(json.dumps(event) + "\\n")
    sys.stdout.flush()


def agent_message(text):
    emit({"type": "item.completed", "item": {"id": "item_9", "type": "agent_message", "text": text}})


def main():
    argv = sys.argv[1:]
    log_path = os.environ.get("FAKE_CODEX_ARGV_LOG")
    if log_path:
        with open(log_path, "a") as f:
            f.write(json.dumps(argv) + "\\n")
    if "--" not in argv:
        print("error: prompt must follow --", file=sys.stderr)
        return 2
    split = argv.index("--")
    options, rest = argv[:split], argv[split + 1:]
    prompt = rest[0] if rest else ""
    if "resume" in options:
        thread_id = options[options.index("resume") + 1]
    else:
        thread_id = "thread-%d" % os.getpid()
    directive, _, arg = prompt.partition(" ")

    if directive == "__garbage__":
        print("not json at all")
        print("still not json")
        return 0

    if directive != "__no_thread__":
        emit({"type": "thread.started", "thread_id": thread_id})
    emit({"type": "turn.started"})

    if directive == "__ignore_term__":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        time.sleep(float(arg))
    elif directive == "__sleep__":
        time.sleep(float(arg))
    elif directive == "__fail__":
        print("boom: something broke", file=sys.stderr)
        return 3
    elif directive == "__sandbox__":
        emit({"type": "item.completed", "item": {
            "id": "item_1", "type": "command_execution", "command": "touch x",
            "aggregated_output": "touch: cannot touch 'x': Read-only file system",
            "exit_code": 1, "status": "failed"}})
        return 1
    elif directive == "__error_event__":
        emit({"type": "turn.failed", "error": {"message": "model overloaded"}})
        return 1
    elif directive == "__mixed__":
        print("plain progress line")
        sys.stdout.flush()
    elif directive == "__flood__":
        sys.stdout.write("x" * int(arg) + "\\n")
        sys.stdout.flush()
    elif directive == "__stderr_flood__":
        sys.stderr.write("e" * int(arg))
        sys.stderr.flush()
    elif directive == "__warn__":
        print("warning: config file ignored", file=sys.stderr)
    elif directive == "__many__":
        for i in range(int(arg)):
            agent_message("message %d" % i)
    elif directive in ("__orphan__", "__stubborn_orphan__", "__detached__"):
        mode = "stubborn" if directive == "__stubborn_orphan__" else "plain"
        spawn_helper(mode, detached=directive == "__detached__")
        if arg:
            time.sleep(float(arg))

    emit({"type": "item.completed", "item": {"id": "item_0", "type": "reasoning", "text": "thinking"}})
    agent_message(json.dumps({"argv": argv, "prompt": prompt, "cwd": os.getcwd()}))
    emit({"type": "turn.completed", "usage": {"input_tokens": 1, "output_tokens": 1}})
    return 0


if __name__ == "__main__":
    sys.exit(main())
"""


@pytest.fixture
def fake_codex(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    fake = bin_dir / "codex"
    fake.write_text(_FAKE_CODEX_SCRIPT)
    fake.chmod(0o755)

    repo = tmp_path / "repo"
    (repo / ".git").mkdir(parents=True)
    plain = tmp_path / "plain"
    plain.mkdir()
    image = repo / "shot.png"
    image.write_bytes(b"\x89PNG\r\n\x1a\n")

    argv_log = tmp_path / "argv.jsonl"

    old_path = os.environ.get("PATH", "")
    monkeypatch.setenv("PATH", f"{bin_dir}:{old_path}")
    monkeypatch.setenv("FAKE_CODEX_ARGV_LOG", str(argv_log))

    return {
        "tmp_path": tmp_path,
        "bin": fake,
        "repo": repo,
        "plain": plain,
        "image": image,
        "argv_log": argv_log,
    }


@pytest.fixture
def make_bridge(fake_codex):
    def _make(**overrides) -> cm.CodexBridge:
        overrides.setdefault("kill_grace", 0.5)
        return cm.CodexBridge(cm.BridgeConfig(**overrides))

    return _make
