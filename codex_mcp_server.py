#!/usr/bin/env python3
"""MCP server exposing the Codex CLI (`codex exec`) as a tool."""

import argparse
import asyncio
import collections
import enum
import json
import logging
import os
import shutil
import signal
import subprocess
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    Iterator,
    Literal,
    Mapping,
    Optional,
    Union,
    get_args,
)

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.types import TextContent

__version__ = "0.1.0"

# ── Logging (stderr only, stdout is MCP protocol) ───────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("codex-mcp")

# ── Config ───────────────────────────────────────────────────────────────

DEFAULT_CODEX_BIN = "codex"

# Seconds; per-call timeout_secs and CODEX_DEFAULT_TIMEOUT are clamped to this range
DEFAULT_TIMEOUT = 600
MAX_TIMEOUT = 3600

# Seconds between SIGTERM and SIGKILL
DEFAULT_KILL_GRACE = 5.0

# How long to wait for stderr EOF once the process is gone
STDERR_DRAIN_TIMEOUT = 5.0

MAX_LINE_BYTES = 1024 * 1024
MAX_STDOUT_BYTES = 50 * 1024 * 1024
MAX_STDERR_BYTES = 1024 * 1024

DEFAULT_MESSAGE_LIMIT = 10_000
MAX_MESSAGE_LIMIT = 50_000
MAX_MESSAGE_BYTES = 50 * 1024 * 1024

# Tail of stderr carried in CLIError diagnostics
STDERR_EXCERPT = 4000

VCS_MARKERS = (".git",)

# Lowercased fragments in codex stdout that mean the sandbox blocked an action
SANDBOX_VIOLATION_MARKERS = (
    "sandbox denied",
    "blocked by sandbox",
    "read-only file system",
    "operation not permitted",
)

STDOUT_TRUNCATED_MARKER = "[... stdout truncated due to size limit ...]"
STDERR_TRUNCATED_MARKER = "[... stderr truncated due to size limit ...]"
NO_AGENT_MESSAGE = "(codex returned no agent message)"
NO_OUTPUT = "(codex produced no output)"

_READ_CHUNK = 64 * 1024

# Seconds between checks for surviving members of a signalled process group
_GROUP_POLL = 0.05

_TRUE_WORDS = {"1", "true", "yes", "y", "on", "t", "enable", "enabled"}
_FALSE_WORDS = {"0", "false", "no", "n", "off", "f", "disable", "disabled"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _parse_env_bool(
    environ: Mapping[str, str], key: str, warnings: list[str]
) -> Optional[bool]:
    raw = environ.get(key)
    if raw is None:
        return None
    normalized = raw.strip().lower()
    if normalized in _TRUE_WORDS:
        return True
    if normalized in _FALSE_WORDS:
        return False
    if normalized:
        warnings.append(
            f"Environment variable {key} has unrecognized boolean value {raw!r}; "
            "using the default."
        )
    return None


def _parse_default_timeout(raw: Optional[str]) -> tuple[int, Optional[str]]:
    """Parse CODEX_DEFAULT_TIMEOUT. Returns (seconds, warning)."""
    if raw is None or not raw.strip():
        return DEFAULT_TIMEOUT, None
    value = raw.strip()
    try:
        secs = int(value)
    except ValueError:
        return DEFAULT_TIMEOUT, (
            f"CODEX_DEFAULT_TIMEOUT={value!r} is not a valid number; "
            f"using default of {DEFAULT_TIMEOUT} seconds"
        )
    if secs <= 0:
        return DEFAULT_TIMEOUT, (
            f"CODEX_DEFAULT_TIMEOUT={secs} is invalid; "
            f"using default of {DEFAULT_TIMEOUT} seconds"
        )
    if secs > MAX_TIMEOUT:
        return MAX_TIMEOUT, (
            f"CODEX_DEFAULT_TIMEOUT={secs} exceeds maximum of {MAX_TIMEOUT} seconds; "
            "capping to maximum"
        )
    return secs, None


@dataclass(frozen=True)
class BridgeConfig:
    """Startup configuration, built once and handed to CodexBridge."""

    codex_bin: str = DEFAULT_CODEX_BIN
    default_timeout: int = DEFAULT_TIMEOUT
    kill_grace: float = DEFAULT_KILL_GRACE
    allow_danger_full_access: bool = True
    allow_yolo: bool = True
    allow_skip_git_check: bool = True
    log_level: str = "INFO"
    max_line_bytes: int = MAX_LINE_BYTES
    max_stdout_bytes: int = MAX_STDOUT_BYTES
    max_stderr_bytes: int = MAX_STDERR_BYTES
    # Overrides merged over the inherited environment of the codex process
    env: Optional[Mapping[str, str]] = None
    warnings: tuple[str, ...] = ()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BridgeConfig":
        environ = os.environ if environ is None else environ
        warnings: list[str] = []

        codex_bin = (environ.get("CODEX_BIN") or "").strip() or DEFAULT_CODEX_BIN

        default_timeout, warning = _parse_default_timeout(
            environ.get("CODEX_DEFAULT_TIMEOUT")
        )
        if warning:
            warnings.append(warning)

        kill_grace = DEFAULT_KILL_GRACE
        raw_grace = (environ.get("CODEX_KILL_GRACE") or "").strip()
        if raw_grace:
            try:
                kill_grace = float(raw_grace)
                if kill_grace < 0:
                    raise ValueError(raw_grace)
            except ValueError:
                kill_grace = DEFAULT_KILL_GRACE
                warnings.append(
                    f"CODEX_KILL_GRACE={raw_grace!r} is invalid; "
                    f"using default of {DEFAULT_KILL_GRACE} seconds"
                )

        log_level = (environ.get("CODEX_MCP_LOG_LEVEL") or "INFO").strip().upper()
        if log_level not in _LOG_LEVELS:
            warnings.append(f"CODEX_MCP_LOG_LEVEL={log_level!r} is not a log level; using INFO")
            log_level = "INFO"

        allow_dangerous = _parse_env_bool(environ, "CODEX_ALLOW_DANGEROUS", warnings)
        allow_yolo = _parse_env_bool(environ, "CODEX_ALLOW_YOLO", warnings)
        allow_skip = _parse_env_bool(environ, "CODEX_ALLOW_SKIP_GIT_CHECK", warnings)

        return cls(
            codex_bin=codex_bin,
            default_timeout=default_timeout,
            kill_grace=kill_grace,
            allow_danger_full_access=allow_dangerous is not False,
            allow_yolo=allow_yolo is not False,
            allow_skip_git_check=allow_skip is not False,
            log_level=log_level,
            warnings=tuple(warnings),
        )


# ── Errors ───────────────────────────────────────────────────────────────


class BridgeError(RuntimeError):
    kind = "BridgeError"


class ValidationError(BridgeError):
    kind = "ValidationError"


class InvalidPolicy(BridgeError):
    kind = "InvalidPolicy"


class FilesystemError(BridgeError):
    kind = "FilesystemError"


class ProcessSpawnError(BridgeError):
    kind = "ProcessSpawnError"


class ExecutionTimeout(BridgeError):
    """The deadline expired; `result` holds whatever was captured before the kill."""

    kind = "TimeoutError"

    def __init__(self, message: str, result: Optional["ExecutionResult"] = None):
        super().__init__(message)
        self.result = result


class CLIError(BridgeError):
    kind = "CLIError"

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class PolicyViolationError(CLIError):
    kind = "PolicyViolationError"


class ParseError(BridgeError):
    kind = "ParseError"


# ── Helpers ──────────────────────────────────────────────────────────────


def _humanize_bytes(n: int) -> str:
    v = float(n)
    for unit in ("B", "KB", "MB"):
        if v < 1024:
            return f"{v:.0f}{unit}" if unit == "B" else f"{v:.1f}{unit}"
        v /= 1024
    return f"{v:.1f}GB"


async def _run(cmd: list[str], timeout: float = 30.0) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    total = _humanize_bytes(len(text.encode()))
    return text[:limit] + f"\n[truncated, {total} total, showing first {limit} chars]"


def _excerpt(text: str, limit: int = STDERR_EXCERPT) -> str:
    """Tail of `text`; errors usually end up at the bottom of stderr."""
    text = text.strip()
    if len(text) <= limit:
        return text
    return f"[... {len(text) - limit} earlier chars omitted ...]\n" + text[-limit:]


def _text_block(text: str) -> TextContent:
    return TextContent(type="text", text=text)


def parse_message(line: str) -> dict:
    """Parse one line of `codex exec --json` output into an event dict."""
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, ValueError) as e:
        raise ParseError(f"not a JSON line: {e}") from e
    if not isinstance(data, dict):
        raise ParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


# ── Sandbox policy ───────────────────────────────────────────────────────


class SandboxPolicy(enum.Enum):
    READ_ONLY = "read-only"
    WORKSPACE_WRITE = "workspace-write"
    DANGER_FULL_ACCESS = "danger-full-access"

    @classmethod
    def parse(cls, name: Any) -> "SandboxPolicy":
        if isinstance(name, cls):
            return name
        if isinstance(name, str):
            try:
                return cls(name)
            except ValueError:
                pass
        valid = ", ".join(p.value for p in cls)
        raise InvalidPolicy(f"unknown sandbox policy {name!r}; expected one of: {valid}")


_SANDBOX_FLAGS: dict[SandboxPolicy, tuple[str, ...]] = {
    SandboxPolicy.READ_ONLY: ("--sandbox", "read-only"),
    SandboxPolicy.WORKSPACE_WRITE: ("--sandbox", "workspace-write"),
    SandboxPolicy.DANGER_FULL_ACCESS: ("--sandbox", "danger-full-access"),
}

YOLO_FLAGS = ("--sandbox", "danger-full-access", "--yolo")

if set(_SANDBOX_FLAGS) != set(SandboxPolicy):
    raise RuntimeError("sandbox flag table does not cover every SandboxPolicy")

# Tool parameter type, published to clients as an enum in the input schema
SandboxName = Literal["read-only", "workspace-write", "danger-full-access"]

if set(get_args(SandboxName)) != {p.value for p in SandboxPolicy}:
    raise RuntimeError("SandboxName does not match the SandboxPolicy values")


def resolve_sandbox_flags(policy: Union[SandboxPolicy, str], yolo: bool = False) -> tuple[str, ...]:
    """Map a policy (name or member) to codex flags. yolo replaces the policy outright."""
    policy = SandboxPolicy.parse(policy)
    if yolo:
        return YOLO_FLAGS
    return _SANDBOX_FLAGS[policy]


# ── Session registry ─────────────────────────────────────────────────────


class SessionRegistry:
    """
    Pass-through handling of codex thread ids.

    Tokens are opaque: only their shape is checked on the way in, and the
    last id codex reports is picked up on the way out. Nothing is stored.
    """

    TOKEN_KEYS = ("thread_id", "session_id")

    def validate(self, token: Any) -> Optional[str]:
        if token is None or token == "":
            return None
        if not isinstance(token, str):
            raise ValidationError("SESSION_ID must be a string")
        if not token.strip():
            raise ValidationError("SESSION_ID must not be blank")
        if any(ch in token for ch in ("\x00", "\n", "\r")):
            raise ValidationError("SESSION_ID must not contain NUL or newline characters")
        return token

    def extract(self, result: "ExecutionResult") -> Optional[str]:
        found = None
        for line in result.stdout_lines:
            try:
                message = parse_message(line)
            except ParseError:
                continue
            for key in self.TOKEN_KEYS:
                value = message.get(key)
                if isinstance(value, str) and value.strip():
                    found = value
        return found


# ── Command builder ──────────────────────────────────────────────────────


@dataclass
class ToolInvocation:
    prompt: str
    cd: str
    sandbox: SandboxPolicy = SandboxPolicy.READ_ONLY
    session_id: Optional[str] = None
    skip_git_repo_check: bool = False
    return_all_messages: bool = False
    return_all_messages_limit: Optional[int] = None
    image: list[str] = field(default_factory=list)
    model: Optional[str] = None
    yolo: bool = False
    profile: Optional[str] = None
    timeout_secs: int = DEFAULT_TIMEOUT
    invocation_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class CommandSpec:
    argv: tuple[str, ...]
    cwd: str
    # Set only where the OS hands the child a single command-line string
    command_line: Optional[str] = None


# Characters that make cmd.exe or the CRT argument parser split or reinterpret
_CMD_METACHARS = frozenset("&|<>^()%!")
_WINDOWS_QUOTE_TRIGGERS = frozenset(" \t\n\v\r\"") | _CMD_METACHARS


def quote_windows_arg(arg: str) -> str:
    """
    Quote one argument for a Windows command line.

    The child re-tokenizes its command line with the C runtime rules:
    2n backslashes before a quote become n backslashes, and inside a quoted
    run `""` is a literal quote. Embedded quotes are therefore doubled,
    backslashes in front of any quote (embedded or closing) are doubled,
    and the whole argument is wrapped when it is empty or holds whitespace,
    quotes or cmd.exe metacharacters. Keeping every argument's quote count
    even also keeps cmd.exe in sync when it sits in between.
    """
    if arg and not any(ch in _WINDOWS_QUOTE_TRIGGERS for ch in arg):
        return arg
    out = ['"']
    backslashes = 0
    for ch in arg:
        if ch == "\\":
            backslashes += 1
            continue
        if ch == '"':
            out.append("\\" * (backslashes * 2))
            out.append('""')
        else:
            out.append("\\" * backslashes)
            out.append(ch)
        backslashes = 0
    out.append("\\" * (backslashes * 2))
    out.append('"')
    return "".join(out)


# cmd.exe expands %cd:~,% to an empty string, so this leaves a bare `%`
# behind without giving cmd a variable name to substitute.
_CMD_PERCENT_ESCAPE = "%%cd:~,%"


def escape_cmd_percent(quoted: str) -> str:
    """Stop cmd.exe from expanding %NAME% references, which it does even inside quotes."""
    return quoted.replace("%", _CMD_PERCENT_ESCAPE)


def windows_command_line(argv: Iterable[str]) -> str:
    """
    Join argv into the line `cmd.exe /c` runs to reach codex.cmd.

    Two layers parse it: cmd.exe expands percent references, then the C
    runtime splits arguments. A line break would end the command inside
    cmd.exe, so arguments holding one are refused.
    """
    parts = []
    for index, arg in enumerate(argv):
        if "\n" in arg or "\r" in arg:
            raise ValidationError(
                f"argument {index} contains a line break, which cannot be passed "
                "through cmd.exe to codex on Windows"
            )
        parts.append(escape_cmd_percent(quote_windows_arg(arg)))
    return " ".join(parts)


def _posix_command(argv: tuple[str, ...], cwd: str) -> CommandSpec:
    # execve takes the vector as-is; no quoting layer exists.
    return CommandSpec(argv=argv, cwd=cwd)


# Launched by CreateProcess directly; anything else goes through cmd.exe,
# which also resolves bare names and the npm codex.cmd shim.
_WINDOWS_NATIVE_EXTS = (".exe", ".com")


def _windows_command(argv: tuple[str, ...], cwd: str) -> CommandSpec:
    if os.path.splitext(argv[0])[1].lower() in _WINDOWS_NATIVE_EXTS:
        # No cmd.exe layer: subprocess applies the C runtime quoting itself.
        return CommandSpec(argv=argv, cwd=cwd)
    return CommandSpec(argv=argv, cwd=cwd, command_line=windows_command_line(argv))


CommandStrategy = Callable[[tuple[str, ...], str], CommandSpec]


def select_command_strategy(platform: Optional[str] = None) -> CommandStrategy:
    platform = platform or sys.platform
    if platform.startswith("win"):
        return _windows_command
    return _posix_command


def _find_repo_root(path: str) -> Optional[str]:
    current = path
    while True:
        if any(os.path.exists(os.path.join(current, m)) for m in VCS_MARKERS):
            return current
        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent


class CommandBuilder:
    """Turns a validated invocation into the exact `codex exec` argument vector."""

    def __init__(self, codex_bin: str = DEFAULT_CODEX_BIN, platform: Optional[str] = None):
        self.codex_bin = codex_bin
        self.platform = platform or sys.platform
        self._strategy = select_command_strategy(self.platform)

    def _executable(self) -> str:
        if self.platform.startswith("win"):
            # codex ships as codex.cmd on Windows; which() honours PATHEXT.
            return shutil.which(self.codex_bin) or self.codex_bin
        return self.codex_bin

    def _check_workdir(self, cd: str, skip_git_repo_check: bool) -> str:
        workdir = os.path.realpath(os.path.expanduser(cd))
        if not os.path.exists(workdir):
            raise FilesystemError(f"working directory does not exist: {cd}")
        if not os.path.isdir(workdir):
            raise FilesystemError(f"working directory is not a directory: {cd}")
        if not skip_git_repo_check and _find_repo_root(workdir) is None:
            raise FilesystemError(
                f"working directory is not inside a git repository: {cd} "
                "(pass skip_git_repo_check=true to run outside a repository)"
            )
        return workdir

    def _check_image(self, path: str, workdir: str) -> str:
        resolved = path if os.path.isabs(path) else os.path.join(workdir, path)
        resolved = os.path.realpath(resolved)
        if not os.path.exists(resolved):
            raise FilesystemError(f"image file does not exist: {path}")
        if not os.path.isfile(resolved):
            raise FilesystemError(f"image path is not a file: {path}")
        if not os.access(resolved, os.R_OK):
            raise FilesystemError(f"image file is not readable: {path}")
        return resolved

    def build(self, invocation: ToolInvocation, flags: tuple[str, ...]) -> CommandSpec:
        workdir = self._check_workdir(invocation.cd, invocation.skip_git_repo_check)
        images = [self._check_image(p, workdir) for p in invocation.image]

        argv = [self._executable(), "exec", *flags, "--cd", workdir, "--json"]
        if invocation.skip_git_repo_check:
            argv.append("--skip-git-repo-check")
        if invocation.model:
            argv.extend(["--model", invocation.model])
        if invocation.profile:
            argv.extend(["--profile", invocation.profile])
        for image in images:
            argv.extend(["--image", image])

        # `resume` is a subcommand of exec; without it codex opens a new thread.
        if invocation.session_id:
            argv.extend(["resume", invocation.session_id])

        # The prompt always follows `--` so a leading dash is never read as a flag.
        argv.extend(["--", invocation.prompt])
        return self._strategy(tuple(argv), workdir)


# ── Process executor ─────────────────────────────────────────────────────


@dataclass
class ExecutionResult:
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    stdout_lines: list[str] = field(default_factory=list)
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    duration_ms: float = 0.0

    @property
    def stdout(self) -> str:
        return "\n".join(self.stdout_lines)


@dataclass
class ProcessHandle:
    invocation_id: str
    process: asyncio.subprocess.Process
    started_at: float
    deadline: float
    stdout_bytes: int = 0
    stderr_bytes: int = 0

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_alive(self) -> bool:
        return self.process.returncode is None


class ProcessTable:
    """In-flight codex processes keyed by invocation id."""

    def __init__(self):
        self._entries: dict[str, ProcessHandle] = {}

    def add(self, handle: ProcessHandle):
        if handle.invocation_id in self._entries:
            raise RuntimeError(f"invocation {handle.invocation_id} already has a process")
        self._entries[handle.invocation_id] = handle

    def discard(self, handle: ProcessHandle):
        """Drop `handle`, leaving any other process registered under its id alone."""
        if self._entries.get(handle.invocation_id) is handle:
            del self._entries[handle.invocation_id]

    def get(self, invocation_id: str) -> Optional[ProcessHandle]:
        return self._entries.get(invocation_id)

    def ids(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, invocation_id: object) -> bool:
        return invocation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class LineStream:
    """
    Single-pass async sequence of (line, truncated) pairs read from a pipe.

    Lines longer than `max_line_bytes` keep their head, the rest of the line
    is read and discarded so the next line starts at the right offset.
    """

    def __init__(self, reader: asyncio.StreamReader, max_line_bytes: int = MAX_LINE_BYTES):
        self._reader = reader
        self._max = max_line_bytes
        self._pending: collections.deque = collections.deque()
        self._buf = bytearray()
        self._overflow = False
        self._eof = False
        self._started = False

    def __aiter__(self) -> "LineStream":
        if self._started:
            raise RuntimeError("output stream can only be consumed once")
        self._started = True
        return self

    async def __anext__(self) -> tuple[bytes, bool]:
        while not self._pending:
            if self._eof:
                raise StopAsyncIteration
            chunk = await self._reader.read(_READ_CHUNK)
            if not chunk:
                self._eof = True
                if self._buf or self._overflow:
                    self._emit()
                continue
            self._split(chunk)
        return self._pending.popleft()

    def _split(self, chunk: bytes):
        start = 0
        while True:
            nl = chunk.find(b"\n", start)
            end = len(chunk) if nl == -1 else nl
            piece = chunk[start:end]
            room = self._max - len(self._buf)
            if len(piece) > room:
                self._buf += piece[: max(room, 0)]
                self._overflow = True
            else:
                self._buf += piece
            if nl == -1:
                return
            self._emit()
            start = nl + 1

    def _emit(self):
        self._pending.append((bytes(self._buf), self._overflow))
        self._buf.clear()
        self._overflow = False


LineCallback = Callable[[str], Awaitable[None]]


class ProcessExecutor:
    """Spawns codex, streams its output, and enforces deadline and cancellation."""

    def __init__(
        self,
        table: ProcessTable,
        kill_grace: float = DEFAULT_KILL_GRACE,
        max_line_bytes: int = MAX_LINE_BYTES,
        max_stdout_bytes: int = MAX_STDOUT_BYTES,
        max_stderr_bytes: int = MAX_STDERR_BYTES,
        env: Optional[Mapping[str, str]] = None,
        platform: Optional[str] = None,
    ):
        self.table = table
        self.kill_grace = kill_grace
        self.max_line_bytes = max_line_bytes
        self.max_stdout_bytes = max_stdout_bytes
        self.max_stderr_bytes = max_stderr_bytes
        self.env = env
        self.platform = platform or sys.platform

    async def _spawn(self, spec: CommandSpec) -> asyncio.subprocess.Process:
        env = {**os.environ, **self.env} if self.env else None
        # Zero off Windows, where Popen rejects any other value.
        group_flags = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        try:
            if spec.command_line is not None:
                return await asyncio.create_subprocess_shell(
                    spec.command_line,
                    cwd=spec.cwd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                    creationflags=group_flags,
                )
            return await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                start_new_session=True,
                creationflags=group_flags,
            )
        except FileNotFoundError as e:
            raise ProcessSpawnError(f"codex executable not found: {spec.argv[0]} ({e})") from e
        except PermissionError as e:
            raise ProcessSpawnError(f"codex executable is not runnable: {spec.argv[0]} ({e})") from e
        except OSError as e:
            raise ProcessSpawnError(f"failed to launch codex: {e}") from e

    async def execute(
        self,
        spec: CommandSpec,
        timeout: float,
        invocation_id: Optional[str] = None,
        on_line: Optional[LineCallback] = None,
    ) -> ExecutionResult:
        invocation_id = invocation_id or uuid.uuid4().hex
        tag = invocation_id[:8]
        process = await self._spawn(spec)
        started = time.monotonic()
        handle = ProcessHandle(invocation_id, process, started, started + timeout)
        result = ExecutionResult(pid=process.pid)
        stderr_task: Optional[asyncio.Task] = None
        try:
            self.table.add(handle)
            log.info(f"[{tag}] codex started pid={process.pid} cwd={spec.cwd}")
            stderr_task = asyncio.create_task(self._drain_stderr(handle, result))
            try:
                await asyncio.wait_for(
                    self._communicate(handle, result, on_line), timeout=timeout
                )
            except asyncio.TimeoutError:
                log.warning(f"[{tag}] codex pid={process.pid} exceeded {timeout:g}s, terminating")
                await self._terminate(handle)
                await self._finish_stderr(stderr_task, tag)
                self._finalize(handle, result)
                raise ExecutionTimeout(
                    f"codex timed out after {timeout:g} seconds", result=result
                ) from None
            except asyncio.CancelledError:
                log.warning(f"[{tag}] CancelledError: terminating codex pid={process.pid}")
                await asyncio.shield(self._terminate(handle))
                raise

            await self._finish_stderr(stderr_task, tag)
            self._finalize(handle, result)
            log.info(
                f"[{tag}] codex exited code={result.exit_code} "
                f"stdout={_humanize_bytes(handle.stdout_bytes)} "
                f"stderr={_humanize_bytes(handle.stderr_bytes)} "
                f"({result.duration_ms}ms)"
            )
            return result
        finally:
            # Helpers codex started share its group and can outlive it.
            await asyncio.shield(self._terminate(handle))
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()
            self.table.discard(handle)

    def _finalize(self, handle: ProcessHandle, result: ExecutionResult):
        result.exit_code = handle.process.returncode
        result.duration_ms = round((time.monotonic() - handle.started_at) * 1000, 1)

    async def _communicate(
        self,
        handle: ProcessHandle,
        result: ExecutionResult,
        on_line: Optional[LineCallback],
    ):
        reader = asyncio.create_task(self._read_stdout(handle, result, on_line))
        exited = asyncio.create_task(handle.process.wait())
        try:
            done, _ = await asyncio.wait({reader, exited}, return_when=asyncio.FIRST_COMPLETED)
            if reader in done:
                reader.result()
            await exited
            # Anything codex left in its group can hold stdout or stderr open.
            await self._terminate(handle)
            await reader
        finally:
            for task in (reader, exited):
                if not task.done():
                    task.cancel()

    async def _read_stdout(
        self,
        handle: ProcessHandle,
        result: ExecutionResult,
        on_line: Optional[LineCallback],
    ):
        assert handle.process.stdout is not None
        kept = 0
        capped = False
        async for raw, overflow in LineStream(handle.process.stdout, self.max_line_bytes):
            handle.stdout_bytes += len(raw) + 1
            if capped:
                continue
            if kept + len(raw) > self.max_stdout_bytes:
                capped = True
                result.stdout_truncated = True
                result.stdout_lines.append(STDOUT_TRUNCATED_MARKER)
                continue
            kept += len(raw)
            text = raw.decode("utf-8", errors="replace").rstrip("\r")
            if overflow:
                result.stdout_truncated = True
                text += f"[... line truncated at {_humanize_bytes(self.max_line_bytes)} ...]"
            result.stdout_lines.append(text)
            if on_line is not None:
                await on_line(text)

    async def _drain_stderr(self, handle: ProcessHandle, result: ExecutionResult):
        assert handle.process.stderr is not None
        chunks: list[bytes] = []
        kept = 0
        while True:
            chunk = await handle.process.stderr.read(_READ_CHUNK)
            if not chunk:
                break
            handle.stderr_bytes += len(chunk)
            room = self.max_stderr_bytes - kept
            if room > 0:
                chunks.append(chunk[:room])
                kept += min(room, len(chunk))
            if len(chunk) > room:
                # Keep reading so the child never blocks on a full pipe.
                result.stderr_truncated = True
        text = b"".join(chunks).decode("utf-8", errors="replace").rstrip("\n")
        if result.stderr_truncated:
            text += "\n" + STDERR_TRUNCATED_MARKER
        result.stderr = text

    async def _finish_stderr(self, task: asyncio.Task, tag: str):
        try:
            await asyncio.wait_for(task, timeout=STDERR_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            log.warning(f"[{tag}] stderr still open after exit, giving up on the rest")

    async def _terminate(self, handle: ProcessHandle):
        """Stop codex and everything it started, then reap codex. Safe to repeat."""
        if self.platform.startswith("win"):
            await self._kill_tree(handle)
        else:
            await self._kill_group(handle)

    @staticmethod
    def _signal_group(pgid: int, sig: int) -> bool:
        """Signal every member of `pgid`. Returns False once the group is empty."""
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            return False
        except PermissionError:
            # macOS refuses while the only member is a leader not yet reaped.
            return True
        return True

    async def _kill_group(self, handle: ProcessHandle):
        process = handle.process
        tag = handle.invocation_id[:8]
        # start_new_session made codex the leader of group `pid`; the group
        # id stays valid as long as any member is alive, even after codex exits.
        pgid = process.pid
        leader_gone = process.returncode is not None
        if not self._signal_group(pgid, signal.SIGTERM):
            await process.wait()
            return
        if leader_gone:
            log.info(f"[{tag}] codex exited, stopping processes left in group {pgid}")
        deadline = time.monotonic() + self.kill_grace
        while process.returncode is None or self._signal_group(pgid, 0):
            if time.monotonic() >= deadline:
                log.warning(f"[{tag}] codex process group {pgid} ignored SIGTERM, killing")
                self._signal_group(pgid, signal.SIGKILL)
                break
            await asyncio.sleep(_GROUP_POLL)
        await process.wait()

    async def _kill_tree(self, handle: ProcessHandle):
        process = handle.process
        tag = handle.invocation_id[:8]
        if process.returncode is not None:
            # Already reaped, so the pid may be reused; taskkill /T would follow it.
            return
        try:
            # CREATE_NEW_PROCESS_GROUP made the child a group leader; the break
            # reaches every console process in the group, cmd.exe and node alike.
            process.send_signal(signal.CTRL_BREAK_EVENT)
        except (OSError, ValueError) as e:
            log.debug(f"[{tag}] CTRL_BREAK to pid={process.pid} failed: {e}")
        else:
            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
            except asyncio.TimeoutError:
                log.warning(f"[{tag}] codex pid={process.pid} ignored CTRL_BREAK, killing its tree")
        # The child exiting says nothing about what it started, e.g. node under cmd.exe.
        try:
            code, _, err = await _run(
                ["taskkill", "/F", "/T", "/PID", str(process.pid)], timeout=10
            )
        except (OSError, asyncio.TimeoutError) as e:
            log.warning(f"[{tag}] taskkill for pid={process.pid} failed: {e}")
        else:
            if code != 0:
                log.debug(f"[{tag}] taskkill exited {code}: {err.strip()}")
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()


def classify_exit(result: ExecutionResult, errors: Iterable[str] = ()) -> Optional[CLIError]:
    """Map a finished run to None (success) or the error it represents."""
    if result.exit_code == 0:
        return None
    errors = list(errors)
    stderr = _excerpt(result.stderr) if result.stderr else ""
    lowered = result.stdout.lower()
    if any(marker in lowered for marker in SANDBOX_VIOLATION_MARKERS):
        message = errors[-1] if errors else "codex was stopped by the sandbox policy"
        return PolicyViolationError(message, exit_code=result.exit_code, stderr=stderr)
    message = errors[-1] if errors else f"codex exited with code {result.exit_code}"
    if stderr:
        message = f"{message}\nStderr: {stderr}"
    return CLIError(message, exit_code=result.exit_code, stderr=stderr)


# ── Response translator ──────────────────────────────────────────────────


@dataclass
class Translation:
    blocks: list[TextContent]
    errors: list[str] = field(default_factory=list)
    structured: bool = False
    has_agent_message: bool = False
    messages_truncated: bool = False


def _agent_message_text(message: dict) -> Optional[str]:
    item = message.get("item")
    if not isinstance(item, dict) or item.get("type") != "agent_message":
        return None
    text = item.get("text")
    return text if isinstance(text, str) else None


def _error_text(message: dict) -> Optional[str]:
    kind = message.get("type")
    if not isinstance(kind, str) or ("error" not in kind and "fail" not in kind):
        return None
    error = message.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return f"codex error: {error['message']}"
    if isinstance(message.get("message"), str):
        return f"codex error: {message['message']}"
    return f"codex error: {kind}"


class ResponseTranslator:
    def __init__(
        self,
        max_messages: int = MAX_MESSAGE_LIMIT,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
    ):
        self.max_messages = max_messages
        self.max_message_bytes = max_message_bytes

    def iter_messages(self, lines: Iterable[str]) -> Iterator[Union[dict, str]]:
        """Yield event dicts, or the raw line for anything that is not one."""
        for line in lines:
            if not line.strip():
                continue
            try:
                yield parse_message(line)
            except ParseError:
                yield line

    def message_limit(self, limit: Optional[int]) -> int:
        if not limit or limit < 1:
            return min(DEFAULT_MESSAGE_LIMIT, self.max_messages)
        return min(limit, self.max_messages)

    def translate(
        self,
        result: ExecutionResult,
        return_all_messages: bool = False,
        limit: Optional[int] = None,
    ) -> Translation:
        messages = list(self.iter_messages(result.stdout_lines))
        events = [m for m in messages if isinstance(m, dict)]
        errors = [e for e in (_error_text(m) for m in events) if e]
        has_agent_message = any(_agent_message_text(m) is not None for m in events)

        if not events:
            raw = result.stdout.strip("\n")
            return Translation(blocks=[_text_block(raw or NO_OUTPUT)])

        translation = Translation(
            blocks=[], errors=errors, structured=True, has_agent_message=has_agent_message
        )
        if return_all_messages:
            self._all_blocks(messages, self.message_limit(limit), translation)
        else:
            translation.blocks.append(_text_block(self._final_text(messages, errors)))
        return translation

    def _all_blocks(self, messages: list, cap: int, translation: Translation):
        size = 0
        dropped = 0
        for message in messages:
            if isinstance(message, str):
                text = message
            else:
                text = json.dumps(message, ensure_ascii=False, separators=(",", ":"))
            cost = len(text.encode())
            if len(translation.blocks) >= cap or size + cost > self.max_message_bytes:
                dropped += 1
                continue
            size += cost
            translation.blocks.append(_text_block(text))
        if dropped:
            translation.messages_truncated = True
            translation.blocks.append(
                _text_block(f"[... {dropped} more message(s) truncated ...]")
            )

    def _final_text(self, messages: list, errors: list[str]) -> str:
        for message in reversed(messages):
            if isinstance(message, dict):
                text = _agent_message_text(message)
                if text is not None:
                    return text
        if errors:
            return errors[-1]
        opaque = [m for m in messages if isinstance(m, str)]
        if opaque:
            return "\n".join(opaque)
        return NO_AGENT_MESSAGE


# ── Invocation validator ─────────────────────────────────────────────────

TOOL_PARAMS = frozenset(
    {
        "PROMPT",
        "cd",
        "sandbox",
        "SESSION_ID",
        "skip_git_repo_check",
        "return_all_messages",
        "return_all_messages_limit",
        "image",
        "model",
        "yolo",
        "profile",
        "timeout_secs",
    }
)


def _bool_param(params: Mapping[str, Any], name: str) -> bool:
    value = params.get(name)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a boolean")
    return value


def _optional_text(params: Mapping[str, Any], name: str) -> Optional[str]:
    value = params.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    if "\x00" in value:
        raise ValidationError(f"{name} must not contain NUL characters")
    return value


def _optional_int(params: Mapping[str, Any], name: str) -> Optional[int]:
    value = params.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    if value < 0:
        raise ValidationError(f"{name} must not be negative")
    return value


def resolve_timeout(requested: Optional[int], config: BridgeConfig) -> tuple[int, Optional[str]]:
    if requested is None:
        return config.default_timeout, None
    if requested == 0:
        return config.default_timeout, (
            f"Timeout of 0 seconds is invalid; using default of {config.default_timeout} seconds"
        )
    if requested > MAX_TIMEOUT:
        return MAX_TIMEOUT, (
            f"Timeout of {requested} seconds exceeds maximum of {MAX_TIMEOUT} seconds; "
            "capping to maximum"
        )
    return requested, None


def apply_security_restrictions(invocation: ToolInvocation, config: BridgeConfig) -> list[str]:
    """Downgrade requests the server operator has not allowed. Returns warnings."""
    warnings = []
    if not config.allow_danger_full_access and invocation.sandbox is SandboxPolicy.DANGER_FULL_ACCESS:
        invocation.sandbox = SandboxPolicy.READ_ONLY
        warnings.append(
            "Security warning: danger-full-access sandbox mode was downgraded to read-only. "
            "Set CODEX_ALLOW_DANGEROUS=true to enable."
        )
    if not config.allow_yolo and invocation.yolo:
        invocation.yolo = False
        warnings.append(
            "Security warning: yolo mode was disabled. Set CODEX_ALLOW_YOLO=true to enable."
        )
    if not config.allow_skip_git_check and invocation.skip_git_repo_check:
        invocation.skip_git_repo_check = False
        warnings.append(
            "Security warning: skip_git_repo_check was disabled. "
            "Set CODEX_ALLOW_SKIP_GIT_CHECK=true to enable."
        )
    return warnings


def validate_invocation(
    params: Mapping[str, Any], config: BridgeConfig
) -> tuple[ToolInvocation, list[str]]:
    """Check raw tool arguments and build a ToolInvocation. Returns (invocation, warnings)."""
    unknown = sorted(set(params) - TOOL_PARAMS)
    if unknown:
        raise ValidationError(f"unknown parameter(s): {', '.join(unknown)}")

    prompt = params.get("PROMPT")
    if not isinstance(prompt, str) or not prompt:
        raise ValidationError("PROMPT is required and must be a non-empty string")
    if "\x00" in prompt:
        raise ValidationError("PROMPT must not contain NUL characters")

    cd = params.get("cd")
    if not isinstance(cd, str) or not cd.strip():
        raise ValidationError("cd is required and must be a non-empty string")

    sandbox = params.get("sandbox")
    policy = SandboxPolicy.parse(SandboxPolicy.READ_ONLY.value if sandbox is None else sandbox)

    images = params.get("image") or []
    if not isinstance(images, (list, tuple)) or not all(
        isinstance(p, str) and p for p in images
    ):
        raise ValidationError("image must be a list of non-empty path strings")

    limit = _optional_int(params, "return_all_messages_limit")
    if limit == 0:
        raise ValidationError("return_all_messages_limit must be at least 1")

    invocation = ToolInvocation(
        prompt=prompt,
        cd=cd,
        sandbox=policy,
        session_id=params.get("SESSION_ID"),
        skip_git_repo_check=_bool_param(params, "skip_git_repo_check"),
        return_all_messages=_bool_param(params, "return_all_messages"),
        return_all_messages_limit=limit,
        image=list(images),
        model=_optional_text(params, "model"),
        yolo=_bool_param(params, "yolo"),
        profile=_optional_text(params, "profile"),
    )

    warnings = apply_security_restrictions(invocation, config)

    invocation.timeout_secs, warning = resolve_timeout(
        _optional_int(params, "timeout_secs"), config
    )
    if warning:
        warnings.append(warning)
    if limit is not None and limit > MAX_MESSAGE_LIMIT:
        warnings.append(
            f"return_all_messages_limit of {limit} exceeds maximum of {MAX_MESSAGE_LIMIT}; "
            "capping to maximum"
        )
    return invocation, warnings


# ── Bridge ───────────────────────────────────────────────────────────────


@dataclass
class CodexResponse:
    success: bool
    session_id: Optional[str]
    blocks: list[TextContent]
    error: Optional[str] = None
    error_kind: Optional[str] = None
    exit_code: Optional[int] = None
    warnings: list[str] = field(default_factory=list)
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    messages_truncated: bool = False

    def status(self) -> dict:
        status: dict[str, Any] = {"success": self.success, "SESSION_ID": self.session_id or ""}
        if self.error:
            status["error"] = self.error
            status["error_kind"] = self.error_kind
        if self.exit_code is not None:
            status["exit_code"] = self.exit_code
        if self.warnings:
            status["warnings"] = self.warnings
        for flag in ("stdout_truncated", "stderr_truncated", "messages_truncated"):
            if getattr(self, flag):
                status[flag] = True
        return status

    def to_content(self) -> list[TextContent]:
        """Translated blocks in order, then one JSON status block."""
        return [*self.blocks, _text_block(json.dumps(self.status(), ensure_ascii=False))]


class CodexBridge:
    """Runs one tool invocation end to end: validate, build, execute, translate."""

    def __init__(self, config: Optional[BridgeConfig] = None, platform: Optional[str] = None):
        self.config = config or BridgeConfig()
        self.table = ProcessTable()
        self.sessions = SessionRegistry()
        self.builder = CommandBuilder(self.config.codex_bin, platform=platform)
        self.executor = ProcessExecutor(
            self.table,
            kill_grace=self.config.kill_grace,
            max_line_bytes=self.config.max_line_bytes,
            max_stdout_bytes=self.config.max_stdout_bytes,
            max_stderr_bytes=self.config.max_stderr_bytes,
            env=self.config.env,
            platform=platform,
        )
        self.translator = ResponseTranslator()

    async def run(
        self, params: Mapping[str, Any], on_line: Optional[LineCallback] = None
    ) -> CodexResponse:
        invocation, warnings = validate_invocation(params, self.config)
        invocation.session_id = self.sessions.validate(invocation.session_id)
        flags = resolve_sandbox_flags(invocation.sandbox, invocation.yolo)
        spec = self.builder.build(invocation, flags)
        return await self.invoke(invocation, spec, warnings, on_line=on_line)

    async def invoke(
        self,
        invocation: ToolInvocation,
        spec: CommandSpec,
        warnings: Optional[list[str]] = None,
        on_line: Optional[LineCallback] = None,
    ) -> CodexResponse:
        warnings = [*self.config.warnings, *(warnings or [])]
        tag = invocation.invocation_id[:8]
        log.info(
            f"[{tag}] invoke sandbox={invocation.sandbox.value}"
            f"{' yolo' if invocation.yolo else ''} "
            f"resume={'yes' if invocation.session_id else 'no'} "
            f"timeout={invocation.timeout_secs}s prompt={len(invocation.prompt)} chars"
        )

        failure: Optional[BridgeError] = None
        try:
            result = await self.executor.execute(
                spec,
                invocation.timeout_secs,
                invocation_id=invocation.invocation_id,
                on_line=on_line,
            )
        except ProcessSpawnError as e:
            log.error(f"[{tag}] {e}")
            return CodexResponse(
                success=False,
                session_id=invocation.session_id,
                blocks=[_text_block(str(e))],
                error=str(e),
                error_kind=e.kind,
                warnings=warnings,
            )
        except ExecutionTimeout as e:
            failure = e
            result = e.result or ExecutionResult()

        translation = self.translator.translate(
            result, invocation.return_all_messages, invocation.return_all_messages_limit
        )
        if failure is None:
            failure = classify_exit(result, translation.errors)
        if failure is None and translation.errors:
            # codex reported a failed turn but still exited 0
            failure = CLIError("\n".join(translation.errors), exit_code=result.exit_code)

        session_id = self.sessions.extract(result) or invocation.session_id
        success = failure is None
        if success:
            if result.stderr.strip():
                warnings.append(_truncate(result.stderr.strip(), STDERR_EXCERPT))
            if not session_id:
                warnings.append(
                    "Failed to get SESSION_ID from the codex session; it cannot be resumed."
                )
            if translation.structured and not translation.has_agent_message:
                warnings.append(
                    "No agent_messages returned; enable return_all_messages "
                    "or check codex output for details."
                )
        else:
            log.warning(f"[{tag}] {failure.kind}: {str(failure).splitlines()[0]}")

        return CodexResponse(
            success=success,
            session_id=session_id,
            blocks=translation.blocks,
            error=None if success else str(failure),
            error_kind=None if success else failure.kind,
            exit_code=result.exit_code,
            warnings=warnings,
            stdout_truncated=result.stdout_truncated,
            stderr_truncated=result.stderr_truncated,
            messages_truncated=translation.messages_truncated,
        )


# ── MCP Server ───────────────────────────────────────────────────────────

INSTRUCTIONS = (
    "This server provides a codex tool for AI-assisted coding tasks. "
    "Each call runs `codex exec` in the directory given by cd under the requested "
    "sandbox policy (read-only by default). The response holds the agent's final "
    "message (or every message when return_all_messages is true) followed by a JSON "
    "status block with success, SESSION_ID, and any error or warnings. Pass the "
    "returned SESSION_ID back to continue the same conversation. Calls that share a "
    "SESSION_ID are not serialized by the server; wait for one to finish before "
    "resuming it again."
)


def _progress_reporter(ctx: Context) -> LineCallback:
    seen = 0

    async def on_line(line: str):
        nonlocal seen
        seen += 1
        try:
            await ctx.report_progress(seen)
        except Exception as e:
            log.debug(f"progress report failed: {e}")

    return on_line


def build_server(bridge: CodexBridge) -> FastMCP:
    """Create the FastMCP server with the codex tool bound to `bridge`."""
    server = FastMCP("codex", instructions=INSTRUCTIONS)

    @server.tool(
        name="codex",
        description="Execute Codex CLI for AI-assisted coding tasks",
    )
    async def codex(
        PROMPT: str,
        cd: str,
        sandbox: SandboxName = SandboxPolicy.READ_ONLY.value,
        SESSION_ID: Optional[str] = None,
        skip_git_repo_check: bool = False,
        return_all_messages: bool = False,
        return_all_messages_limit: Optional[int] = None,
        image: Optional[list[str]] = None,
        model: Optional[str] = None,
        yolo: bool = False,
        profile: Optional[str] = None,
        timeout_secs: Optional[int] = None,
        ctx: Context = None,
    ):
        """
        Run a non-interactive Codex session (`codex exec`) on a coding task.

        Args:
            PROMPT: Instruction for the task, passed to codex unchanged.
            cd: Workspace root for codex. Must exist and, unless
                skip_git_repo_check is set, sit inside a git repository.
            sandbox: read-only (default), workspace-write, or danger-full-access.
            SESSION_ID: Resume this codex session instead of starting a new one.
            skip_git_repo_check: Allow running outside a git repository.
            return_all_messages: Return every message (reasoning, tool calls,
                results) instead of only the final agent message.
            return_all_messages_limit: Max messages kept when return_all_messages
                is true (default 10000, max 50000).
            image: Image files to attach to the prompt (relative to cd).
            model: Model override.
            yolo: Run every command without approvals or sandboxing.
            profile: Profile name from ~/.codex/config.toml.
            timeout_secs: Deadline in seconds (default CODEX_DEFAULT_TIMEOUT or
                600, max 3600).

        Returns:
            Content blocks followed by a JSON status block carrying SESSION_ID.
        """
        params = {
            "PROMPT": PROMPT,
            "cd": cd,
            "sandbox": sandbox,
            "SESSION_ID": SESSION_ID,
            "skip_git_repo_check": skip_git_repo_check,
            "return_all_messages": return_all_messages,
            "return_all_messages_limit": return_all_messages_limit,
            "image": image,
            "model": model,
            "yolo": yolo,
            "profile": profile,
            "timeout_secs": timeout_secs,
        }
        on_line = _progress_reporter(ctx) if ctx is not None else None
        try:
            response = await bridge.run(params, on_line=on_line)
        except BridgeError as e:
            raise ToolError(f"{e.kind}: {e}") from e
        return response.to_content()

    return server


# ── Entry point ──────────────────────────────────────────────────────────

_HELP_EPILOG = """\
environment variables:
  CODEX_BIN                    codex executable (default: codex)
  CODEX_DEFAULT_TIMEOUT        default per-call timeout in seconds
                               (default: 600, max: 3600; larger values are capped)
  CODEX_KILL_GRACE             seconds between SIGTERM and SIGKILL (default: 5)
  CODEX_ALLOW_DANGEROUS        allow danger-full-access (default: allowed)
  CODEX_ALLOW_YOLO             allow yolo mode (default: allowed)
  CODEX_ALLOW_SKIP_GIT_CHECK   allow skip_git_repo_check (default: allowed)
                               booleans accept 1/true/yes/y/on/t/enable/enabled
                               or 0/false/no/n/off/f/disable/disabled
  CODEX_MCP_LOG_LEVEL          DEBUG, INFO, WARNING, ERROR (default: INFO)

The server speaks MCP over stdio. Example client configuration:
  {"mcpServers": {"codex": {"command": "codex-mcp-server"}}}
"""


def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(
        prog="codex-mcp-server",
        description="MCP server that provides AI-assisted coding through the Codex CLI",
        epilog=_HELP_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.parse_args(argv)

    config = BridgeConfig.from_env()
    logging.getLogger().setLevel(config.log_level)
    for warning in config.warnings:
        log.warning(warning)

    server = build_server(CodexBridge(config))
    log.info(f"codex MCP server ready (codex={config.codex_bin}, timeout={config.default_timeout}s)")
    server.run(transport="stdio")


if __name__ == "__main__":
    main()
