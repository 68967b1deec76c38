"""领域层模型与异常。

包含：
- models: ConversationTurn / SessionHandle / PrefetchResult / GateVerdict 等数据结构。
- exceptions: 业务异常与一致性告警类型定义。
"""
