import asyncio
import os
import sys
from pathlib import Path

import pytest

from recall_core.domain.exceptions import ToolInvocationError
from recall_core.tools.runner import run_command


@pytest.mark.asyncio
async def test_run_command_returns_stdout(tmp_path):
    out = await run_command(sys.executable, ["-c", "import os; print(os.getcwd())"], cwd=tmp_path, timeout_ms=10000)
    assert Path(out.strip()).resolve() == tmp_path.resolve()


@pytest.mark.asyncio
async def test_run_command_nonzero_exit():
    with pytest.raises(ToolInvocationError) as exc:
        await run_command(
            sys.executable,
            ["-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"],
            timeout_ms=10000,
        )
    assert exc.value.code == "TOOL_EXIT_ERROR"
    assert exc.value.message == "boom"
    assert exc.value.extra["exit_code"] == 3


@pytest.mark.asyncio
async def test_run_command_timeout_kills_process():
    with pytest.raises(ToolInvocationError) as exc:
        await run_command(sys.executable, ["-c", "import time; time.sleep(10)"], timeout_ms=200)
    assert exc.value.code == "TOOL_TIMEOUT"


@pytest.mark.asyncio
async def test_run_command_spawn_error(tmp_path):
    with pytest.raises(ToolInvocationError) as exc:
        await run_command(str(tmp_path / "missing-binary"), [], timeout_ms=1000)
    assert exc.value.code == "TOOL_SPAWN_ERROR"


@pytest.mark.asyncio
async def test_run_command_rejects_nul_in_args():
    with pytest.raises(ToolInvocationError) as exc:
        await run_command(sys.executable, ["-c", "print('x')", "bad\x00arg"], timeout_ms=1000)
    assert exc.value.code == "TOOL_SPAWN_ERROR"


@pytest.mark.asyncio
async def test_cancelled_run_kills_process(tmp_path):
    pid_file = tmp_path / "child.pid"
    script = "import os, sys, time; open(sys.argv[1], 'w').write(str(os.getpid())); time.sleep(30)"
    task = asyncio.ensure_future(run_command(sys.executable, ["-c", script, str(pid_file)], timeout_ms=60000))
    for _ in range(200):
        if pid_file.exists() and pid_file.read_text():
            break
        await asyncio.sleep(0.05)
    pid = int(pid_file.read_text())

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
