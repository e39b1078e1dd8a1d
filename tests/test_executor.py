import subprocess

import pytest

from pcidevices.executor import Executor, LocalExecutor


def _script(path, body):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)


def test_run_returns_stdout(tmp_path):
    _script(tmp_path / "bin" / "show-args", "printf '%s|' \"$@\"\n")
    executor = LocalExecutor(prefix=str(tmp_path))
    assert executor.run("/bin/show-args", ["a", "b"]) == b"a|b|"


def test_run_passes_environment(tmp_path):
    _script(tmp_path / "bin" / "greet", "printf '%s' \"$GREETING\"\n")
    executor = LocalExecutor(["GREETING=hello"], prefix=str(tmp_path))
    assert executor.run("/bin/greet", []) == b"hello"


def test_run_failure_raises(tmp_path):
    _script(tmp_path / "bin" / "fail", "echo oops >&2\nexit 3\n")
    executor = LocalExecutor(prefix=str(tmp_path))
    with pytest.raises(subprocess.CalledProcessError) as info:
        executor.run("/bin/fail", [])
    assert info.value.returncode == 3
    assert b"oops" in info.value.stderr


def test_run_missing_command(tmp_path):
    executor = LocalExecutor(prefix=str(tmp_path))
    with pytest.raises(FileNotFoundError):
        executor.run("/bin/absent", [])


def test_check_ready_queries_sriov_manage(tmp_path):
    _script(tmp_path / "usr" / "bin" / "file", "printf '%s' \"$1\"\n")
    executor = LocalExecutor(prefix=str(tmp_path))
    out = executor.check_ready()
    assert out == f"{tmp_path}/usr/lib/nvidia/sriov-manage".encode()


def test_executor_is_abstract():
    with pytest.raises(TypeError):
        Executor()