"""外部工具子进程调用。

每次调用启动一个子进程，stdin 关闭，stdout/stderr 收集为文本。
超时会强制结束子进程；非零退出、超时和无法启动都以 ToolInvocationError 抛出，
由调用方决定降级方式（检索链路换下一层，同步链路记为原生写入失败）。
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence, Union

from recall_core.domain.exceptions import ToolInvocationError


# (command, args, cwd, timeout_ms) -> stdout
CommandRunner = Callable[..., Awaitable[str]]

MAX_STDERR_CHARS = 2000


async def run_command(
    command: str,
    args: Sequence[str],
    *,
    cwd: Optional[Union[str, Path]] = None,
    timeout_ms: int,
) -> str:
    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (OSError, ValueError) as e:
        # ValueError: 参数中含有 NUL 字节
        raise ToolInvocationError(code="TOOL_SPAWN_ERROR", message=str(e), command=command)

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        await _kill(proc)
        raise ToolInvocationError(
            code="TOOL_TIMEOUT",
            message=f"{command} timed out after {timeout_ms}ms",
            command=command,
            timeout_ms=timeout_ms,
        )
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    stdout_text = stdout.decode("utf-8", errors="replace") if stdout else ""
    stderr_text = stderr.decode("utf-8", errors="replace") if stderr else ""
    if proc.returncode != 0:
        detail = stderr_text.strip() or stdout_text.strip() or f"exit code {proc.returncode}"
        raise ToolInvocationError(
            code="TOOL_EXIT_ERROR",
            message=detail[:MAX_STDERR_CHARS],
            command=command,
            exit_code=proc.returncode,
        )
    return stdout_text


async def _kill(proc: "asyncio.subprocess.Process") -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()
