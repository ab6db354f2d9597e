"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在编排层或 UI 层做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、conversation_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class EngineLoadFailure(BusinessError):
    """GPU 与 CPU 两条加载路径都失败，进程降级为"不可生成"模式。"""


class GenerationBusy(BusinessError):
    """已有一次生成在进行中（软拒绝，不作为 error 事件上报）。"""


class ConversationNotFound(BusinessError):
    """会话不存在（静默中止）。"""


class StreamingFailure(BusinessError):
    """单次生成的流式阶段失败，可恢复，通过 error 事件上报。"""


class PersistenceFailure(BusinessError):
    """会话记录读写失败。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""
