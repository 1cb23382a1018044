from django.urls import path

from .views import (
    DoctorPrescriptionView,
    ManualTextView,
    OrderOCRStatusView,
    OrderAuditView,
    OrderDetailView,
    OrderListCreateView,
    OrderPaymentView,
    OrderPaymentsListView,
    OrderReceiptView,
    OrderStatusView,
    PatientSearchView,
    PaymentLinkView,
    PaymentWebhookView,
    PublicPaymentStatusView,
    PublicPaymentView,
    ReviewApproveView,
    ReviewEditView,
    ReviewQueueView,
    ReviewRejectView,
    VerifyOrderView,
)

urlpatterns = [
    path('orders/', OrderListCreateView.as_view(), name='order-list-create'),
    path('orders/<uuid:order_id>/', OrderDetailView.as_view(), name='order-detail'),
    path('orders/<uuid:order_id>/manual-text', ManualTextView.as_view(), name='order-manual-text'),
    path('orders/<uuid:order_id>/ocr-status', OrderOCRStatusView.as_view(), name='order-ocr-status'),
    path('orders/<uuid:order_id>/verify', VerifyOrderView.as_view(), name='order-verify'),
    path('orders/<uuid:order_id>/status', OrderStatusView.as_view(), name='order-status'),
    path('orders/<uuid:order_id>/audit', OrderAuditView.as_view(), name='order-audit'),
    path('orders/<uuid:order_id>/pay', OrderPaymentView.as_view(), name='order-pay'),
    path('orders/<uuid:order_id>/payments', OrderPaymentsListView.as_view(), name='order-payments'),
    path('orders/<uuid:order_id>/receipt', OrderReceiptView.as_view(), name='order-receipt'),
    path('orders/<uuid:order_id>/request-payment', PaymentLinkView.as_view(), name='order-request-payment'),
    path('orders/<uuid:order_id>/review/approve', ReviewApproveView.as_view(), name='review-approve'),
    path('orders/<uuid:order_id>/review/reject', ReviewRejectView.as_view(), name='review-reject'),
    path('orders/<uuid:order_id>/review/edit', ReviewEditView.as_view(), name='review-edit'),
    path('review/queue', ReviewQueueView.as_view(), name='review-queue'),
    path('doctor/prescriptions', DoctorPrescriptionView.as_view(), name='doctor-prescriptions'),
    path('doctor/patients', PatientSearchView.as_view(), name='doctor-patient-search'),
    path('public/pay/<str:token>', PublicPaymentView.as_view(), name='public-pay'),
    path('public/pay/<str:token>/status', PublicPaymentStatusView.as_view(), name='public-pay-status'),
    path('webhooks/<str:gateway>', PaymentWebhookView.as_view(), name='payment-webhook'),
]
