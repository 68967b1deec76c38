from pathlib import Path
from typing import Dict, List, Union

import pytest

from recall_core.config.settings import Settings
from recall_core.domain.exceptions import ToolInvocationError


TOOL_RELPATH = ".recall/tools/context/context-tool.js"


class FakeRunner:
    """记录每次调用的假子进程执行器。

    responses 以动词为键（工具脚本的第一个参数，或命令本身的第一个参数）；
    值可以是字符串、异常实例，或接收 args 的函数。
    """

    def __init__(self, responses: Dict[str, object] = None):
        self.responses = dict(responses or {})
        self.calls: List[dict] = []

    @staticmethod
    def verb_of(args) -> str:
        if args and str(args[0]).endswith((".js", ".py")):
            return args[1] if len(args) > 1 else ""
        return args[0] if args else ""

    async def __call__(self, command, args, *, cwd=None, timeout_ms):
        args = list(args)
        self.calls.append({"command": command, "args": args, "cwd": cwd, "timeout_ms": timeout_ms})
        response = self.responses.get(self.verb_of(args), "")
        if callable(response):
            response = response(args)
        if isinstance(response, Exception):
            raise response
        return response

    def verbs(self) -> List[str]:
        return [self.verb_of(c["args"]) for c in self.calls]


def tool_failure(message: str = "boom") -> ToolInvocationError:
    return ToolInvocationError(code="TOOL_EXIT_ERROR", message=message, exit_code=1)


@pytest.fixture
def make_settings(tmp_path):
    def factory(**overrides) -> Settings:
        values = {
            "workspace_root": str(tmp_path / "workspace"),
            "storage_root": str(tmp_path / "storage"),
            "log_dir": str(tmp_path / "logs"),
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return factory


def install_tool(cfg: Settings, agent_id: str, content: Union[str, None] = None) -> Path:
    path = Path(cfg.workspace_root) / agent_id / cfg.tool_relpath
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content or "// stub\n", encoding="utf-8")
    return path
