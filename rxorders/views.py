"""
HTTP 层：只做 解析 → 调用组件 → 包装 ApiResponse。

所有业务异常直接往上抛，由 exception_handler.unified_exception_handler 统一格式化。
actor 一律来自已登录用户持久化的 AccountRole，不从请求体里读。
"""

import logging

from rest_framework import status as http_status
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from . import payloads, services
from .exceptions import AuthError, ValidationError
from .models import PAYMENT_PENDING, REJECTED, ROLE_DOCTOR, ROLE_PATIENT, ROLE_PHARMACIST
from .serializers import (
    serialize_audit_entry,
    serialize_order,
    serialize_order_list,
    serialize_patient,
    serialize_payment,
    serialize_payment_link,
    serialize_public_payment_info,
)

logger = logging.getLogger(__name__)


def api_response(data, message=None, status=http_status.HTTP_200_OK):
    body = {'success': True, 'data': data}
    if message:
        body['message'] = message
    return Response(body, status=status)


def parse(payload_cls, request):
    serializer = payload_cls(data=request.data)
    serializer.is_valid(raise_exception=True)
    return serializer.validated_data


class RxOrdersAPIView(APIView):
    """
    所有接口的基类。

    allowed_roles 为空表示任何已登录角色都可以访问；
    否则不在列表里的角色直接 403（AuthError）。
    """

    permission_classes = [IsAuthenticated]
    allowed_roles = ()

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        self.actor = self.resolve_actor(request)
        if self.allowed_roles and self.actor not in self.allowed_roles:
            raise AuthError(
                message=f"Role '{self.actor}' may not perform this action",
                detail={'allowed_roles': list(self.allowed_roles)},
            )

    @staticmethod
    def resolve_actor(request):
        account_role = getattr(request.user, 'account_role', None)
        if account_role is None:
            raise AuthError('Account has no role assigned', code='ROLE_MISSING')
        return account_role.role


# ── Orders ────────────────────────────────────────────────────────────────

class OrderListCreateView(RxOrdersAPIView):
    """POST /api/orders/: 上传处方；GET /api/orders/?patientId=&status=: 查询"""

    def post(self, request):
        if self.actor != ROLE_PATIENT:
            raise AuthError('Only patients can upload prescriptions')
        data = parse(payloads.CreateOrderPayload, request)
        order = services.create_order(
            data['patientProfileId'], data['originalImageUrl'], status=data.get('status'),
        )
        return api_response(serialize_order(order), 'Order created. OCR processing started.',
                            status=http_status.HTTP_201_CREATED)

    def get(self, request):
        patient_id = request.query_params.get('patientId')
        order_status = request.query_params.get('status') or None
        repository = services.build_repository()

        if patient_id:
            orders = repository.list_by_patient(patient_id, status=order_status)
        elif order_status:
            orders = repository.list_by_status(order_status)
        else:
            raise ValidationError('patientId or status query parameter is required', code='MISSING_FILTER')
        return api_response(serialize_order_list(orders))


class OrderDetailView(RxOrdersAPIView):
    """GET /api/orders/<order_id>/"""

    def get(self, request, order_id):
        order = services.build_repository().get(order_id)
        return api_response(serialize_order(order))


class ManualTextView(RxOrdersAPIView):
    """PUT /api/orders/<order_id>/manual-text: OCR 失败 / 超时后的手动输入"""

    allowed_roles = (ROLE_PATIENT,)

    def put(self, request, order_id):
        data = parse(payloads.ManualTextPayload, request)
        order = services.build_ocr_pipeline().enter_manual_text(order_id, data['extractedText'], actor=self.actor)
        return api_response(serialize_order(order), 'Prescription text saved')


class OrderOCRStatusView(RxOrdersAPIView):
    """GET /api/orders/<order_id>/ocr-status: 非阻塞、幂等"""

    def get(self, request, order_id):
        view = services.build_ocr_pipeline().poll_status(order_id)
        return api_response(view.to_dict())


class VerifyOrderView(RxOrdersAPIView):
    """PUT /api/orders/<order_id>/verify: 患者核对 OCR 结果"""

    allowed_roles = (ROLE_PATIENT,)

    def put(self, request, order_id):
        data = parse(payloads.VerifyOrderPayload, request)
        details = data.get('medicationDetails')
        order = services.verify_order(
            order_id,
            notes=data.get('notes'),
            medication_details=dict(details) if details is not None else None,
        )
        return api_response(serialize_order(order), 'Prescription verified')


class OrderStatusView(RxOrdersAPIView):
    """
    PUT /api/orders/<order_id>/status: 直接请求一次状态迁移，由状态机校验 actor

    药剂师把订单改成 rejected 和 review/reject 是同一件事：要求理由，并留下 PharmacistReview。
    """

    def put(self, request, order_id):
        data = parse(payloads.StatusUpdatePayload, request)
        if data['status'] == REJECTED and self.actor == ROLE_PHARMACIST:
            order = services.build_review_workflow().reject(
                order_id, data.get('reason'), reviewed_by=request.user.get_username(),
            )
            return api_response(serialize_order(order), 'Order moved to rejected')
        order = services.build_state_machine().transition(
            order_id, data['status'], self.actor, reason=data.get('reason'),
        )
        return api_response(serialize_order(order), f"Order moved to {order.status}")


class OrderAuditView(RxOrdersAPIView):
    """GET /api/orders/<order_id>/audit"""

    def get(self, request, order_id):
        repository = services.build_repository()
        order = repository.get(order_id)
        entries = [serialize_audit_entry(entry) for entry in repository.audit_trail(order)]
        return api_response({'orderId': str(order.id), 'status': order.status, 'entries': entries})


# ── Payments ──────────────────────────────────────────────────────────────

def payment_response(attempt):
    """扣款结果 → HTTP：201 新扣款成功 / 200 之前已经付过 / 202 等待渠道确认"""
    if attempt.already_paid:
        return api_response(serialize_payment(attempt), 'Order has already been paid')
    if attempt.status == PAYMENT_PENDING:
        return api_response(serialize_payment(attempt), 'Payment pending confirmation',
                            status=http_status.HTTP_202_ACCEPTED)
    return api_response(serialize_payment(attempt), 'Payment successful',
                        status=http_status.HTTP_201_CREATED)


class OrderPaymentView(RxOrdersAPIView):
    """
    POST /api/orders/<order_id>/pay
      201 新扣款成功 / 200 订单之前已经付过（返回那一次）/ 202 等待渠道回调 / 402 渠道拒绝
    """

    def post(self, request, order_id):
        data = parse(payloads.PaymentPayload, request)
        attempt = services.build_payment_orchestrator().charge(
            order_id,
            data['gateway'],
            data['amount'],
            data.get('currency') or None,
            data.get('paymentData') or {},
        )
        return payment_response(attempt)


class OrderReceiptView(RxOrdersAPIView):
    """GET /api/orders/<order_id>/receipt: 已付款订单的收据"""

    def get(self, request, order_id):
        receipt = services.build_payment_orchestrator().receipt_for_order(order_id)
        return api_response(receipt.to_dict())


class OrderPaymentsListView(RxOrdersAPIView):
    """GET /api/orders/<order_id>/payments"""

    def get(self, request, order_id):
        attempts = services.build_payment_orchestrator().payments_for_order(order_id)
        return api_response([serialize_payment(attempt) for attempt in attempts])


class PaymentLinkView(RxOrdersAPIView):
    """POST /api/orders/<order_id>/request-payment: 发付款链接给第三方"""

    allowed_roles = (ROLE_PATIENT,)

    def post(self, request, order_id):
        data = parse(payloads.PaymentLinkPayload, request)
        link = services.request_payment_link(order_id, data['recipientPhone'], data['messageType'])
        return api_response(
            serialize_payment_link(link, services.payment_link_url(link)),
            f"Payment link sent via {link.message_type}",
            status=http_status.HTTP_201_CREATED,
        )


# ── Public (付款链接 / 渠道回调，不需要登录) ─────────────────────────────

class PublicPaymentView(APIView):
    """
    GET  /api/public/pay/<token>: 打开付款链接
    POST /api/public/pay/<token>: 第三方付款，规则同 /orders/<id>/pay
    """

    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request, token):
        link = services.get_usable_payment_link(token)
        return api_response(serialize_public_payment_info(link, link.order, services.payment_link_state(link)))

    def post(self, request, token):
        data = parse(payloads.PaymentPayload, request)
        attempt = services.pay_with_link(
            token,
            data['gateway'],
            data['amount'],
            data.get('currency') or None,
            data.get('paymentData') or {},
        )
        return payment_response(attempt)


class PublicPaymentStatusView(APIView):
    """GET /api/public/pay/<token>/status: 链接是否还能用（过期 / 已使用不报错）"""

    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request, token):
        link = services.get_payment_link(token)
        return api_response(services.payment_link_state(link))


class PaymentWebhookView(APIView):
    """POST /api/webhooks/<gateway>: 渠道异步通知，靠签名认证"""

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request, gateway):
        attempt = services.build_payment_orchestrator().handle_webhook(gateway, request.body, request.META)
        if attempt is None:
            return api_response(None, 'Event ignored')
        return api_response(serialize_payment(attempt), f'Payment {attempt.status}')


# ── Pharmacist review ─────────────────────────────────────────────────────

class ReviewApproveView(RxOrdersAPIView):
    """POST /api/orders/<order_id>/review/approve"""

    allowed_roles = (ROLE_PHARMACIST,)

    def post(self, request, order_id):
        data = parse(payloads.ApprovePayload, request)
        details = data.get('editedDetails')
        order = services.build_review_workflow().approve(
            order_id,
            data['calculatedCost'],
            reviewed_by=request.user.get_username(),
            edited_details=dict(details) if details is not None else None,
            notes=data.get('pharmacistNotes'),
        )
        return api_response(serialize_order(order), 'Prescription approved')


class ReviewRejectView(RxOrdersAPIView):
    """POST /api/orders/<order_id>/review/reject"""

    allowed_roles = (ROLE_PHARMACIST,)

    def post(self, request, order_id):
        data = parse(payloads.RejectPayload, request)
        order = services.build_review_workflow().reject(
            order_id,
            data['rejectionReason'],
            reviewed_by=request.user.get_username(),
            notes=data.get('pharmacistNotes'),
        )
        return api_response(serialize_order(order), 'Prescription rejected')


class ReviewEditView(RxOrdersAPIView):
    """PUT /api/orders/<order_id>/review/edit"""

    allowed_roles = (ROLE_PHARMACIST,)

    def put(self, request, order_id):
        data = parse(payloads.EditPayload, request)
        order = services.build_review_workflow().edit(
            order_id, dict(data['editedDetails']), notes=data.get('pharmacistNotes'),
        )
        return api_response(serialize_order(order), 'Medication details updated')


class ReviewQueueView(RxOrdersAPIView):
    """GET /api/review/queue: 等待药剂师审核的订单，最早的在前"""

    allowed_roles = (ROLE_PHARMACIST,)

    def get(self, request):
        orders = services.build_review_workflow().pending_queue()
        return api_response(serialize_order_list(orders))


# ── Doctor ────────────────────────────────────────────────────────────────

class DoctorPrescriptionView(RxOrdersAPIView):
    """POST /api/doctor/prescriptions"""

    allowed_roles = (ROLE_DOCTOR,)

    def post(self, request):
        data = parse(payloads.DoctorPrescriptionPayload, request)
        order = services.submit_doctor_prescription(
            request.user.get_username(),
            data['patientProfileId'],
            dict(data['medicationDetails']),
            notes=data.get('prescriptionNotes'),
        )
        return api_response(serialize_order(order), 'Prescription submitted',
                            status=http_status.HTTP_201_CREATED)


class PatientSearchView(RxOrdersAPIView):
    """GET /api/doctor/patients?query=&searchType=&limit="""

    allowed_roles = (ROLE_DOCTOR,)

    def get(self, request):
        try:
            limit = int(request.query_params.get('limit', 10))
        except ValueError:
            raise ValidationError('limit must be an integer', code='INVALID_LIMIT')
        patients = services.search_patients(
            request.query_params.get('query', ''),
            search_type=request.query_params.get('searchType', 'all'),
            limit=limit,
        )
        return api_response([serialize_patient(patient) for patient in patients])
