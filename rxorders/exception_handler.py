"""
统一异常处理器。

挂到 DRF 的 EXCEPTION_HANDLER setting 上。
所有响应都是 ApiResponse 格式，前端用同一套逻辑判断：
  response.success === true   → 成功，数据在 data
  response.success === false  → 出问题了，看 type / code

统一错误响应格式：
{
    "success": false,
    "type":    "validation_error" | "state_error" | "conflict" | ...,
    "code":    "INVALID_TRANSITION",
    "error":   "Cannot move order from 'preparing' to 'awaiting_payment'",
    "detail":  { ... }  // 可选
}
"""

import logging

from django.http import JsonResponse
from rest_framework import exceptions as drf_exceptions
from rest_framework.views import exception_handler as drf_default_handler

from .exceptions import BaseAppException

logger = logging.getLogger(__name__)


def error_body(exc_type, code, message, detail=None):
    body = {
        'success': False,
        'type': exc_type,
        'code': code,
        'error': message,
    }
    if detail is not None:
        body['detail'] = detail
    return body


def unified_exception_handler(exc, context):
    """
    DRF exception handler entry point.

    优先级：
    1. BaseAppException 及其子类 → 统一格式
    2. DRF 自带的 ValidationError（serializer.is_valid raise 的）→ 转成统一格式
    3. DRF 认证 / 权限异常 → type='auth'
    4. 其他异常 → 交给 DRF 默认处理，再包一层 success=false
    """

    # --- 1. 我们自己的异常体系 ---
    if isinstance(exc, BaseAppException):
        if exc.http_status >= 500:
            logger.error('[API] %s: %s', exc.code, exc.message)
        body = error_body(exc.type, exc.code, exc.message, exc.detail)
        return JsonResponse(body, status=exc.http_status)

    # --- 2. DRF 自带的 ValidationError ---
    if isinstance(exc, drf_exceptions.ValidationError):
        body = error_body('validation_error', 'VALIDATION_ERROR', 'Request validation failed', exc.detail)
        return JsonResponse(body, status=400)

    # --- 3. 认证 / 权限 ---
    if isinstance(exc, (drf_exceptions.NotAuthenticated, drf_exceptions.AuthenticationFailed)):
        body = error_body('auth', 'NOT_AUTHENTICATED', str(exc.detail))
        return JsonResponse(body, status=401)

    if isinstance(exc, drf_exceptions.PermissionDenied):
        body = error_body('auth', 'NOT_AUTHORIZED', str(exc.detail))
        return JsonResponse(body, status=403)

    # --- 4. 其他的交给 DRF 默认处理 ---
    response = drf_default_handler(exc, context)
    if response is not None:
        detail = response.data.get('detail') if isinstance(response.data, dict) else response.data
        response.data = error_body('error', 'REQUEST_FAILED', str(detail))
    return response
