"""统一业务异常模型。

检索与会话同步链路上的错误都继承自 BusinessError，并携带机器可读的 code，
便于在各自的边界处捕获、降级并写入诊断日志。这些错误不会抛给调用方。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "TOOL_TIMEOUT"）。
        message: 可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 exit_code、verb 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ConfigurationError(BusinessError):
    """配置值非法或低于下限；调用方用默认值替换，不致命。"""


class ToolInvocationError(BusinessError):
    """外部工具子进程非零退出、超时或无法启动。

    检索链路把它当作降级到下一层的信号，同步链路把它当作原生写入失败。
    """


class ParseError(BusinessError):
    """工具输出无法解析（缺少 JSON、JSON 损坏且无法修复、缺少 session id）。"""


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误。"""


class ValidationError(BusinessError):
    """参数或配置校验失败（例如缺少 API key）。"""


class ConsistencyWarning(UserWarning):
    """检索注入标记出现在不该出现的位置（例如模型回复里），只记录不抛出。"""
