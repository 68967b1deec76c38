"""分类器 Provider 抽象接口。

闸门只依赖此协议：给定一段提示词，异步返回模型的原始回复文本。
具体厂商（OpenAI 兼容接口等）各自实现，解析 JSON 的工作留给 gate 模块。
"""

from typing import Protocol


class ClassifierClient(Protocol):
    """LLM 分类器客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志。
    - classify(prompt): 执行一次非流式调用，返回回复文本。
    """

    name: str

    async def classify(self, prompt: str) -> str:
        ...
