"""
Request payloads — DRF Serializer 只做「形状」校验（字段是否存在、类型）。

业务规则（卡号 Luhn、状态是否允许等）在 service / orchestrator 里，
这里通过后 view 把 validated_data 交给对应组件。
"""

from rest_framework import serializers

from .messaging import CHANNELS


class MedicationDetailsPayload(serializers.Serializer):
    name = serializers.CharField(max_length=200)
    dosage = serializers.CharField(max_length=100)
    quantity = serializers.IntegerField(min_value=1)


class CreateOrderPayload(serializers.Serializer):
    patientProfileId = serializers.CharField(max_length=64)
    originalImageUrl = serializers.CharField(allow_blank=True)
    status = serializers.CharField(required=False)


class ManualTextPayload(serializers.Serializer):
    extractedText = serializers.CharField(allow_blank=True, trim_whitespace=False)


class VerifyOrderPayload(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    medicationDetails = MedicationDetailsPayload(required=False)


class StatusUpdatePayload(serializers.Serializer):
    # 不在这里限制取值：未知状态由状态机拒绝并写进审计日志
    status = serializers.CharField()
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class PaymentPayload(serializers.Serializer):
    gateway = serializers.CharField()
    amount = serializers.DecimalField(max_digits=10, decimal_places=2)
    currency = serializers.CharField(required=False, allow_blank=True)
    paymentData = serializers.DictField(required=False, default=dict)


class ApprovePayload(serializers.Serializer):
    calculatedCost = serializers.DecimalField(max_digits=10, decimal_places=2)
    editedDetails = MedicationDetailsPayload(required=False)
    pharmacistNotes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class RejectPayload(serializers.Serializer):
    rejectionReason = serializers.CharField(allow_blank=True)
    pharmacistNotes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class EditPayload(serializers.Serializer):
    editedDetails = MedicationDetailsPayload()
    pharmacistNotes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class PaymentLinkPayload(serializers.Serializer):
    recipientPhone = serializers.CharField(allow_blank=True)
    messageType = serializers.ChoiceField(choices=list(CHANNELS))


class DoctorPrescriptionPayload(serializers.Serializer):
    patientProfileId = serializers.CharField()
    medicationDetails = MedicationDetailsPayload()
    prescriptionNotes = serializers.CharField(required=False, allow_blank=True, allow_null=True)

