"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / state_error / conflict / ...）
- code:        业务错误码（INVALID_TRANSITION / GATEWAY_DECLINED / ...）
- message:     人类可读的描述
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

Service 层只需 raise，exception_handler 统一捕获并格式化响应。
"""


class BaseAppException(Exception):
    """所有业务异常的基类。"""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)


class ValidationError(BaseAppException):
    """输入验证失败，调用方可修正。400。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class InvalidImageError(ValidationError):
    """图片引用为空或不可用（OCR 提交时检测）。"""

    code = 'INVALID_IMAGE'


class NotFoundError(BaseAppException):
    type = 'not_found'
    code = 'NOT_FOUND'
    http_status = 404


# ── 状态机误用：永远直接暴露给调用方，不自动重试 ────────────────────────────

class StateMachineError(BaseAppException):
    type = 'state_error'
    code = 'STATE_ERROR'
    http_status = 409


class InvalidTransitionError(StateMachineError):
    """当前状态不允许请求的目标状态。"""

    code = 'INVALID_TRANSITION'


class GuardFailedError(StateMachineError):
    """目标状态原则上可达，但守卫条件不满足（例如没有成功的支付）。"""

    code = 'GUARD_FAILED'


class TerminalStateError(StateMachineError):
    """delivered / rejected 之后任何操作都被拒绝。"""

    code = 'TERMINAL_STATE'


class ConflictError(BaseAppException):
    """
    并发写冲突（乐观锁 version 不匹配，或同一订单已有进行中的扣款）。
    调用方重新读取当前状态后重试。
    """

    type = 'conflict'
    code = 'CONCURRENT_MODIFICATION'
    http_status = 409


# ── 支付 ──────────────────────────────────────────────────────────────────

class GatewayDeclinedError(BaseAppException):
    """支付渠道拒绝。provider 原始消息放在 message 里，前端原样展示并允许重试。"""

    type = 'payment_declined'
    code = 'GATEWAY_DECLINED'
    http_status = 402

    def __init__(self, message, attempt=None, **kwargs):
        self.attempt = attempt
        super().__init__(message, **kwargs)


class AlreadyPaidError(BaseAppException):
    """
    不是错误，是信号：订单已有成功的 PaymentAttempt。
    PaymentOrchestrator.charge() 捕获后直接返回已有的 attempt。
    """

    type = 'signal'
    code = 'ALREADY_PAID'
    http_status = 200

    def __init__(self, attempt, message='Order has already been paid'):
        self.attempt = attempt
        super().__init__(message, detail={'payment_id': str(attempt.id)})


# ── 外部依赖 / 权限 ──────────────────────────────────────────────────────

class ExternalServiceError(BaseAppException):
    """OCR / 存储 / 短信等外部服务不可用。靠轮询重试，不会让订单失败。"""

    type = 'external_service'
    code = 'EXTERNAL_SERVICE_UNAVAILABLE'
    http_status = 503


class AuthError(BaseAppException):
    """当前 actor 无权执行此操作。直接向上传播，不重试。"""

    type = 'auth'
    code = 'NOT_AUTHORIZED'
    http_status = 403
