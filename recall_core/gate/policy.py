"""闸门模式：把规则判定和可选的 LLM 二次分类合成最终的"是否预取"决策。

- always: 总是预取。
- never: 从不预取。
- rule: 只有规则判定为 yes 才预取，ambiguous 视同 no。
- rule_then_llm: ambiguous 时把分类提示词交给注入的 classifier，
  只有其明确回答 need_memory=true 才预取；任何失败都按 no 处理。
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from recall_core.config.settings import Settings, settings
from recall_core.domain.exceptions import BusinessError
from recall_core.domain.models import GateVerdict
from recall_core.gate.prefetch_gate import (
    build_llm_gate_prompt,
    evaluate,
    parse_llm_gate_result,
)
from recall_core.infrastructure.logging.logger import logger


# 输入提示词，返回模型原始回复文本
Classifier = Callable[[str], Awaitable[str]]


@dataclass(frozen=True)
class GateDecision:
    should_prefetch: bool
    reason: str
    verdict: Optional[GateVerdict] = None


class PrefetchGate:
    def __init__(self, cfg: Settings = settings, classifier: Optional[Classifier] = None):
        self._cfg = cfg
        self._classifier = classifier

    async def decide(self, agent_id: str, message: str) -> GateDecision:
        mode = self._cfg.gate_mode
        if mode == "always":
            return GateDecision(True, "gate_mode_always")
        if mode == "never":
            return GateDecision(False, "gate_mode_never")

        verdict = evaluate(message, self._cfg.gate_config())
        if verdict.verdict == "yes":
            return GateDecision(True, verdict.reason, verdict)
        if verdict.verdict == "no":
            return GateDecision(False, verdict.reason, verdict)

        if mode != "rule_then_llm" or self._classifier is None:
            return GateDecision(False, f"{verdict.reason} ambiguous_as_no", verdict)
        return await self._escalate(agent_id, message, verdict)

    async def _escalate(self, agent_id: str, message: str, verdict: GateVerdict) -> GateDecision:
        prompt = build_llm_gate_prompt(agent_id, message)
        try:
            raw = await self._classifier(prompt)
            result = parse_llm_gate_result(raw)
        except BusinessError as exc:
            logger.warning(
                f"llm_gate_failed={exc.code}",
                extra={"extra": {"agent_id": agent_id, "code": exc.code, "error": exc.message}},
            )
            return GateDecision(False, f"{verdict.reason} llm_gate_error={exc.code}", verdict)
        except Exception as exc:  # 注入的 classifier 可能抛任意异常
            logger.exception("llm_gate_failed", extra={"extra": {"agent_id": agent_id}})
            return GateDecision(False, f"{verdict.reason} llm_gate_error={type(exc).__name__}", verdict)

        logger.log(
            logging.INFO,
            "llm_gate_result",
            extra={"extra": {"agent_id": agent_id, "need_memory": result.need_memory, "reason": result.reason}},
        )
        return GateDecision(result.need_memory, f"{verdict.reason} llm:{result.reason}", verdict)
