"""按 agent 串行的异步写入链。

每个 agent 维护一个"尾部" Task，新任务挂在当前尾部之后执行，并成为新的尾部：
- 同一 agent 同一时刻只有一个任务在执行；
- 任务按提交顺序执行；
- 前一个任务失败不影响后一个任务。
链在最后一个任务完成后被移除。
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from recall_core.infrastructure.logging.logger import logger


TaskFactory = Callable[[], Awaitable[None]]


class SyncChains:
    def __init__(self) -> None:
        self._tails: Dict[str, "asyncio.Task[None]"] = {}

    @property
    def pending(self) -> List[str]:
        return list(self._tails)

    def submit(self, agent_id: str, factory: TaskFactory, label: str = "sync") -> "asyncio.Task[None]":
        previous = self._tails.get(agent_id)
        task = asyncio.ensure_future(self._run_after(previous, agent_id, factory, label))
        self._tails[agent_id] = task
        task.add_done_callback(lambda done: self._release(agent_id, done))
        return task

    async def _run_after(
        self,
        previous: Optional["asyncio.Task[None]"],
        agent_id: str,
        factory: TaskFactory,
        label: str,
    ) -> None:
        if previous is not None:
            # 只等待完成，不关心结果
            await asyncio.wait([previous])
        try:
            await factory()
        except Exception:
            logger.exception(
                f"sync task failed for @{agent_id}",
                extra={"extra": {"agent_id": agent_id, "label": label}},
            )

    def _release(self, agent_id: str, task: "asyncio.Task[None]") -> None:
        if self._tails.get(agent_id) is task:
            del self._tails[agent_id]
            logger.log(logging.DEBUG, f"sync chain drained for @{agent_id}")

    async def drain(self) -> None:
        """等待当前所有 agent 的链执行完毕（包括等待期间新提交的任务）。"""

        while self._tails:
            await asyncio.gather(*list(self._tails.values()), return_exceptions=True)
