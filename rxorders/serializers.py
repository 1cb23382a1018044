"""
Response serializers — ORM 对象 → JSON-able dict。

只负责「输出格式化」，不做任何解析或校验。
输入解析和校验在 rxorders/payloads.py（DRF Serializer）。
字段名用 camelCase，和前端 / shared types 保持一致。
"""

from django.conf import settings


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return str(value) if value is not None else None


def serialize_review(review):
    if review is None:
        return None
    return {
        'reviewedBy': review.reviewed_by,
        'reviewedAt': _iso(review.reviewed_at),
        'approved': review.approved,
        'rejectionReason': review.rejection_reason,
        'editedDetails': review.edited_details,
        'pharmacistNotes': review.pharmacist_notes,
        'calculatedCost': _money(review.calculated_cost),
    }


def serialize_order(order):
    """订单详情。medication_details 没有就是 null，不填展示用默认值。"""
    return {
        'orderId': str(order.id),
        'patientProfileId': order.patient_profile_id,
        'status': order.status,
        'source': order.source,
        'originalImageUrl': order.original_image_url,
        'ocrStatus': order.ocr_status,
        'ocrConfidence': order.ocr_confidence,
        'extractedText': order.extracted_text,
        'ocrError': order.ocr_error,
        'ocrProcessedAt': _iso(order.ocr_processed_at),
        'medicationDetails': order.medication_details,
        'userVerified': order.user_verified,
        'userVerificationNotes': order.user_verification_notes,
        'cost': _money(order.cost),
        'pharmacistReview': serialize_review(order.latest_review),
        'version': order.version,
        'createdAt': _iso(order.created_at),
        'updatedAt': _iso(order.updated_at),
    }


def serialize_order_summary(order):
    """列表 / 审核队列用的精简版本。"""
    return {
        'orderId': str(order.id),
        'patientProfileId': order.patient_profile_id,
        'status': order.status,
        'ocrStatus': order.ocr_status,
        'medicationDetails': order.medication_details,
        'cost': _money(order.cost),
        'createdAt': _iso(order.created_at),
        'updatedAt': _iso(order.updated_at),
    }


def serialize_order_list(orders):
    results = [serialize_order_summary(order) for order in orders]
    return {
        'count': len(results),
        'orders': results,
    }


def serialize_payment(attempt):
    body = {
        'paymentId': str(attempt.id),
        'orderId': str(attempt.order_id),
        'gateway': attempt.gateway,
        'amount': _money(attempt.amount),
        'currency': attempt.currency,
        'status': attempt.status,
        'transactionId': attempt.transaction_id,
        'errorMessage': attempt.error_message,
        'createdAt': _iso(attempt.created_at),
        'updatedAt': _iso(attempt.updated_at),
    }
    if hasattr(attempt, 'already_paid'):
        body['alreadyPaid'] = attempt.already_paid
    return body


def serialize_audit_entry(entry):
    body = {
        'from': entry.from_status,
        'to': entry.to_status,
        'actor': entry.actor,
        'outcome': entry.outcome,
        'timestamp': _iso(entry.created_at),
    }
    if entry.error_code:
        body['errorCode'] = entry.error_code
    if entry.message:
        body['message'] = entry.message
    return body


def serialize_payment_link(link, url):
    return {
        'linkId': str(link.id),
        'orderId': str(link.order_id),
        'url': url,
        'recipientPhone': link.recipient_phone,
        'messageType': link.message_type,
        'expiresAt': _iso(link.expires_at),
    }


def serialize_patient(patient):
    return {
        'profileId': str(patient.id),
        'patientName': patient.patient_name,
        'phoneNumber': patient.phone_number or None,
        'email': patient.email or None,
        'dateOfBirth': _iso(patient.date_of_birth),
    }


def serialize_public_payment_info(link, order, state):
    """付款链接打开时给第三方看的信息：只有付款需要的，不带处方原文和患者资料。"""
    details = order.medication_details or {}
    return {
        'orderId': str(order.id),
        'medicationName': details.get('name') or 'Prescription medication',
        'cost': _money(order.cost),
        'currency': settings.PAYMENT_DEFAULT_CURRENCY,
        'pharmacyName': settings.PHARMACY_NAME,
        'expiresAt': _iso(link.expires_at),
        **state,
    }
