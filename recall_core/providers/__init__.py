"""LLM Provider 集成层。

该包下的模块负责：
- 定义分类器抽象接口 (base)。
- 提供 OpenAI 兼容的具体实现 (classifier_client)。
"""

from typing import Optional

from recall_core.config.settings import Settings, settings
from recall_core.providers.base import ClassifierClient
from recall_core.providers.classifier_client import ChatCompletionsClassifier


def create_classifier(cfg: Settings = settings) -> Optional[ClassifierClient]:
    """闸门模式为 rule_then_llm 且配置了 API key 时创建分类器，否则返回 None。"""

    if cfg.gate_mode != "rule_then_llm" or not cfg.llm_gate_api_key:
        return None
    return ChatCompletionsClassifier(cfg)
