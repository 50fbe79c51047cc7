"""Sandbox flag mapping, Windows quoting and argv construction."""

import os
import random

import pytest

import codex_mcp_server as cm
from codex_mcp_server import (
    CommandBuilder,
    FilesystemError,
    InvalidPolicy,
    SandboxPolicy,
    ToolInvocation,
    ValidationError,
    escape_cmd_percent,
    quote_windows_arg,
    resolve_sandbox_flags,
    select_command_strategy,
    windows_command_line,
)


def _msvcrt_split(cmdline: str) -> list[str]:
    """Tokenize a command line the way the Microsoft C runtime does for argv."""
    args = []
    i, n = 0, len(cmdline)
    while i < n:
        while i < n and cmdline[i] in " \t":
            i += 1
        if i >= n:
            break
        buf = []
        in_quotes = False
        while i < n:
            ch = cmdline[i]
            if ch == "\\":
                j = i
                while j < n and cmdline[j] == "\\":
                    j += 1
                count = j - i
                if j < n and cmdline[j] == '"':
                    buf.append("\\" * (count // 2))
                    if count % 2:
                        buf.append('"')
                        i = j + 1
                    else:
                        i = j
                else:
                    buf.append("\\" * count)
                    i = j
                continue
            if ch == '"':
                if in_quotes and i + 1 < n and cmdline[i + 1] == '"':
                    buf.append('"')
                    i += 2
                    continue
                in_quotes = not in_quotes
                i += 1
                continue
            if ch in " \t" and not in_quotes:
                break
            buf.append(ch)
            i += 1
        args.append("".join(buf))
    return args


_CMD_ENV = {"CD": "C:\\repo", "PATH": "C:\\Windows", "USERPROFILE": "C:\\Users\\dev"}


def _cmd_expand(line: str) -> str:
    """Percent expansion as cmd.exe applies it to a `/c` command line."""
    out = []
    i, n = 0, len(line)
    while i < n:
        if line[i] == "%":
            end = line.find("%", i + 1)
            if end != -1:
                name, _, substring = line[i + 1 : end].partition(":~")
                value = _CMD_ENV.get(name.upper())
                if value is not None:
                    # Only the empty slice `:~,` is modelled.
                    out.append("" if substring == "," else value)
                    i = end + 1
                    continue
        out.append(line[i])
        i += 1
    return "".join(out)


# ── Sandbox policy ──────────────────────────────────────────────────────


class TestSandboxPolicy:
    @pytest.mark.parametrize(
        "name,flags",
        [
            ("read-only", ("--sandbox", "read-only")),
            ("workspace-write", ("--sandbox", "workspace-write")),
            ("danger-full-access", ("--sandbox", "danger-full-access")),
        ],
    )
    def test_flags(self, name, flags):
        assert resolve_sandbox_flags(name) == flags

    @pytest.mark.parametrize("policy", list(SandboxPolicy))
    def test_yolo_overrides_every_policy(self, policy):
        assert resolve_sandbox_flags(policy, yolo=True) == (
            "--sandbox",
            "danger-full-access",
            "--yolo",
        )

    def test_every_member_has_flags(self):
        for policy in SandboxPolicy:
            assert resolve_sandbox_flags(policy)[0] == "--sandbox"

    @pytest.mark.parametrize("name", ["", "READ-ONLY", "full", "read_only", None, 3])
    def test_unknown_policy(self, name):
        with pytest.raises(InvalidPolicy):
            SandboxPolicy.parse(name)

    def test_parse_member_passthrough(self):
        assert SandboxPolicy.parse(SandboxPolicy.WORKSPACE_WRITE) is SandboxPolicy.WORKSPACE_WRITE


# ── Windows quoting ─────────────────────────────────────────────────────


class TestQuoteWindowsArg:
    def test_plain_unchanged(self):
        assert quote_windows_arg("plain") == "plain"

    def test_trailing_backslash_unquoted_unchanged(self):
        assert quote_windows_arg("dir\\") == "dir\\"

    def test_empty(self):
        assert quote_windows_arg("") == '""'

    def test_spaces(self):
        assert quote_windows_arg("two words") == '"two words"'

    def test_embedded_quotes_doubled(self):
        assert quote_windows_arg('say "hi"') == '"say ""hi"""'

    def test_backslash_before_quote_doubled(self):
        assert quote_windows_arg('a\\"b') == '"a\\\\""b"'

    def test_trailing_backslash_doubled_when_quoted(self):
        assert quote_windows_arg("my dir\\") == '"my dir\\\\"'

    @pytest.mark.parametrize("meta", list("&|<>^()%!"))
    def test_metachars_quoted(self, meta):
        assert quote_windows_arg(f"a{meta}b") == f'"a{meta}b"'


class TestCmdExpansionModel:
    def test_defined_variable_expanded_even_in_quotes(self):
        assert _cmd_expand('"%USERPROFILE%"') == '"C:\\Users\\dev"'

    def test_undefined_variable_left_alone(self):
        assert _cmd_expand("%NOPE% 100%") == "%NOPE% 100%"

    def test_empty_substring(self):
        assert _cmd_expand("a%cd:~,%b") == "ab"

    def test_escape_leaves_one_percent(self):
        assert _cmd_expand("%%cd:~,%") == "%"


class TestWindowsCommandLine:
    @pytest.mark.parametrize(
        "argv",
        [
            ["codex", "exec", "--", "hello"],
            ["codex", "--", ""],
            ["codex", "--", 'say "hi" & exit'],
            ["codex", "--cd", "C:\\Program Files\\repo\\", "--", "x"],
            ["codex", "--", "trailing\\\\"],
            ["codex", "--", '\\"leading'],
            ["codex", "--", '"'],
            ["codex", "--", '""'],
            ["codex", "--", "tab\there"],
            ["codex", "--", "%PATH% ^ | < > ( ) !"],
            ["codex", "--", "%USERPROFILE%\\.codex"],
            ["codex", "--", "%cd:~,%"],
            ["codex", "--", "100%"],
            ["codex", "--", "-starts-with-dash"],
        ],
    )
    def test_round_trip(self, argv):
        assert _msvcrt_split(_cmd_expand(windows_command_line(argv))) == argv

    def test_percent_references_escaped(self):
        line = windows_command_line(["codex", "--", "%USERPROFILE%"])
        assert line == 'codex -- "%%cd:~,%USERPROFILE%%cd:~,%"'
        assert "C:\\Users\\dev" not in _cmd_expand(line)

    def test_escape_cmd_percent(self):
        assert escape_cmd_percent("plain") == "plain"
        assert escape_cmd_percent('"50%"') == '"50%%cd:~,%"'

    @pytest.mark.parametrize("arg", ["line1\nline2", "cr\rhere", "\r\n"])
    def test_line_breaks_rejected(self, arg):
        with pytest.raises(ValidationError, match="argument 2 contains a line break"):
            windows_command_line(["codex", "--", arg])

    def test_random_round_trip(self):
        rng = random.Random(1234)
        alphabet = 'ab \\"\t&|%^!()<>-:~,'
        for _ in range(500):
            argv = [
                "".join(rng.choice(alphabet) for _ in range(rng.randint(0, 12)))
                for _ in range(rng.randint(1, 4))
            ]
            assert _msvcrt_split(_cmd_expand(windows_command_line(argv))) == argv


class TestStrategy:
    def test_posix_keeps_vector(self):
        spec = select_command_strategy("linux")(("codex", "--", "a b"), "/tmp")
        assert spec.argv == ("codex", "--", "a b")
        assert spec.command_line is None

    def test_windows_sets_command_line(self):
        spec = select_command_strategy("win32")(("codex", "--", "a b"), "C:\\")
        assert spec.command_line == 'codex -- "a b"'

    def test_windows_batch_shim_goes_through_cmd(self):
        argv = ("C:\\npm\\codex.CMD", "--", "50%")
        spec = select_command_strategy("win32")(argv, "C:\\")
        assert spec.command_line == 'C:\\npm\\codex.CMD -- "50%%cd:~,%"'

    @pytest.mark.parametrize("exe", ["C:\\tools\\codex.exe", "C:\\tools\\CODEX.COM"])
    def test_windows_native_binary_launched_directly(self, exe):
        argv = (exe, "--", "line1\nline2 %PATH%")
        spec = select_command_strategy("win32")(argv, "C:\\")
        assert spec.command_line is None
        assert spec.argv == argv


# ── CommandBuilder ──────────────────────────────────────────────────────


class TestCommandBuilder:
    def _flags(self, policy="read-only", yolo=False):
        return resolve_sandbox_flags(policy, yolo)

    def test_new_session_layout(self, fake_codex):
        repo = fake_codex["repo"]
        inv = ToolInvocation(prompt="fix the bug", cd=str(repo))
        spec = CommandBuilder("codex", platform="linux").build(inv, self._flags())
        assert spec.argv == (
            "codex", "exec", "--sandbox", "read-only",
            "--cd", str(repo.resolve()), "--json",
            "--", "fix the bug",
        )
        assert spec.cwd == str(repo.resolve())
        assert "resume" not in spec.argv

    def test_resume_layout(self, fake_codex):
        repo = fake_codex["repo"]
        inv = ToolInvocation(prompt="again", cd=str(repo), session_id="thread-42")
        argv = CommandBuilder("codex", platform="linux").build(inv, self._flags()).argv
        assert argv[-4:] == ("resume", "thread-42", "--", "again")

    def test_all_options(self, fake_codex):
        inv = ToolInvocation(
            prompt="-p looks like a flag",
            cd=str(fake_codex["plain"]),
            skip_git_repo_check=True,
            model="gpt-5",
            profile="fast",
            image=[str(fake_codex["image"])],
            yolo=True,
        )
        argv = CommandBuilder("codex", platform="linux").build(inv, self._flags(yolo=True)).argv
        assert argv[2:5] == ("--sandbox", "danger-full-access", "--yolo")
        assert "--skip-git-repo-check" in argv
        assert argv[argv.index("--model") + 1] == "gpt-5"
        assert argv[argv.index("--profile") + 1] == "fast"
        assert argv[argv.index("--image") + 1] == str(fake_codex["image"].resolve())
        assert argv[-2:] == ("--", "-p looks like a flag")

    def test_relative_image_resolved_against_cd(self, fake_codex):
        repo = fake_codex["repo"]
        inv = ToolInvocation(prompt="look", cd=str(repo), image=["shot.png"])
        argv = CommandBuilder("codex", platform="linux").build(inv, self._flags()).argv
        assert argv[argv.index("--image") + 1] == str(fake_codex["image"].resolve())

    def test_missing_image(self, fake_codex):
        inv = ToolInvocation(prompt="look", cd=str(fake_codex["repo"]), image=["nope.png"])
        with pytest.raises(FilesystemError, match="nope.png"):
            CommandBuilder("codex", platform="linux").build(inv, self._flags())

    def test_image_directory_rejected(self, fake_codex):
        inv = ToolInvocation(prompt="look", cd=str(fake_codex["repo"]), image=[".git"])
        with pytest.raises(FilesystemError, match="not a file"):
            CommandBuilder("codex", platform="linux").build(inv, self._flags())

    @pytest.mark.skipif(
        not hasattr(os, "geteuid") or os.geteuid() == 0,
        reason="root reads files regardless of mode bits",
    )
    def test_unreadable_image_rejected(self, fake_codex):
        image = fake_codex["image"]
        image.chmod(0o000)
        try:
            inv = ToolInvocation(prompt="look", cd=str(fake_codex["repo"]), image=[str(image)])
            with pytest.raises(FilesystemError, match="not readable") as exc_info:
                CommandBuilder("codex", platform="linux").build(inv, self._flags())
            assert str(image) in str(exc_info.value)
        finally:
            image.chmod(0o644)

    def test_missing_cd(self, fake_codex):
        inv = ToolInvocation(prompt="x", cd=str(fake_codex["tmp_path"] / "gone"))
        with pytest.raises(FilesystemError, match="does not exist"):
            CommandBuilder("codex", platform="linux").build(inv, self._flags())

    def test_cd_is_file(self, fake_codex):
        inv = ToolInvocation(prompt="x", cd=str(fake_codex["image"]))
        with pytest.raises(FilesystemError, match="not a directory"):
            CommandBuilder("codex", platform="linux").build(inv, self._flags())

    def test_outside_repo_requires_skip(self, fake_codex):
        inv = ToolInvocation(prompt="x", cd=str(fake_codex["plain"]))
        with pytest.raises(FilesystemError, match="git repository"):
            CommandBuilder("codex", platform="linux").build(inv, self._flags())

    def test_repo_subdirectory_accepted(self, fake_codex):
        sub = fake_codex["repo"] / "src" / "pkg"
        sub.mkdir(parents=True)
        inv = ToolInvocation(prompt="x", cd=str(sub))
        spec = CommandBuilder("codex", platform="linux").build(inv, self._flags())
        assert spec.cwd == str(sub.resolve())

    def test_windows_command_line_round_trips(self, fake_codex):
        inv = ToolInvocation(
            prompt='say "hi" & del C:\\tmp\\ %USERPROFILE%',
            cd=str(fake_codex["repo"]),
            session_id="thread 7",
        )
        builder = CommandBuilder(str(fake_codex["bin"]), platform="win32")
        spec = builder.build(inv, self._flags())
        assert spec.command_line is not None
        assert _msvcrt_split(_cmd_expand(spec.command_line)) == list(spec.argv)
        assert spec.argv[-1] == inv.prompt

    def test_windows_multiline_prompt_rejected(self, fake_codex):
        inv = ToolInvocation(prompt="first line\nsecond line", cd=str(fake_codex["repo"]))
        builder = CommandBuilder(str(fake_codex["bin"]), platform="win32")
        with pytest.raises(ValidationError, match="line break"):
            builder.build(inv, self._flags())

    def test_posix_multiline_prompt_kept(self, fake_codex):
        inv = ToolInvocation(prompt="first line\nsecond line", cd=str(fake_codex["repo"]))
        argv = CommandBuilder("codex", platform="linux").build(inv, self._flags()).argv
        assert argv[-1] == "first line\nsecond line"

    def test_codex_bin_from_config(self, fake_codex):
        inv = ToolInvocation(prompt="x", cd=str(fake_codex["repo"]))
        argv = CommandBuilder("/opt/bin/codex", platform="linux").build(inv, self._flags()).argv
        assert argv[0] == "/opt/bin/codex"


def test_flag_table_is_exhaustive():
    assert set(cm._SANDBOX_FLAGS) == set(SandboxPolicy)
