import uuid

from django.conf import settings
from django.db import models
from django.db.models import Q

# ── Order status ──────────────────────────────────────────────────────────
PENDING_VERIFICATION = 'pending_verification'
AWAITING_VERIFICATION = 'awaiting_verification'
AWAITING_PAYMENT = 'awaiting_payment'
PREPARING = 'preparing'
OUT_FOR_DELIVERY = 'out_for_delivery'
DELIVERED = 'delivered'
REJECTED = 'rejected'

ORDER_STATUS_CHOICES = [
    (PENDING_VERIFICATION, 'Pending verification'),
    (AWAITING_VERIFICATION, 'Awaiting verification'),
    (AWAITING_PAYMENT, 'Awaiting payment'),
    (PREPARING, 'Preparing'),
    (OUT_FOR_DELIVERY, 'Out for delivery'),
    (DELIVERED, 'Delivered'),
    (REJECTED, 'Rejected'),
]
ORDER_STATUSES = [value for value, _ in ORDER_STATUS_CHOICES]

# ── OCR status（OCRJob 复用同一套）─────────────────────────────────────────
OCR_PENDING = 'pending'
OCR_PROCESSING = 'processing'
OCR_COMPLETED = 'completed'
OCR_FAILED = 'failed'

OCR_STATUS_CHOICES = [
    (OCR_PENDING, 'Pending'),
    (OCR_PROCESSING, 'Processing'),
    (OCR_COMPLETED, 'Completed'),
    (OCR_FAILED, 'Failed'),
]

# ── Payment ───────────────────────────────────────────────────────────────
GATEWAY_CHOICES = [
    ('stripe', 'Stripe'),
    ('paypal', 'PayPal'),
    ('mtn', 'MTN Mobile Money'),
]

PAYMENT_PENDING = 'pending'
PAYMENT_SUCCEEDED = 'succeeded'
PAYMENT_FAILED = 'failed'

PAYMENT_STATUS_CHOICES = [
    (PAYMENT_PENDING, 'Pending'),
    (PAYMENT_SUCCEEDED, 'Succeeded'),
    (PAYMENT_FAILED, 'Failed'),
]

# ── Actors ────────────────────────────────────────────────────────────────
ROLE_PATIENT = 'patient'
ROLE_PHARMACIST = 'pharmacist'
ROLE_DOCTOR = 'doctor'
ROLE_SYSTEM = 'system'

ROLE_CHOICES = [
    (ROLE_PATIENT, 'Patient'),
    (ROLE_PHARMACIST, 'Pharmacist'),
    (ROLE_DOCTOR, 'Doctor'),
    (ROLE_SYSTEM, 'System'),
]


class PatientProfile(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    patient_name = models.CharField(max_length=200)
    phone_number = models.CharField(max_length=20, blank=True, default='')
    email = models.EmailField(blank=True, default='')
    date_of_birth = models.DateField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'patient_profiles'


class AccountRole(models.Model):
    """
    账号角色，注册时写入并持久化。
    不要根据 email / 显示名去猜角色。
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='account_role',
    )
    role = models.CharField(max_length=20, choices=ROLE_CHOICES)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'account_roles'


class PrescriptionOrder(models.Model):
    SOURCE_CHOICES = [
        ('upload', 'Patient upload'),
        ('doctor', 'Doctor submission'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # 弱引用，只用于查询
    patient_profile_id = models.CharField(max_length=64, db_index=True)
    status = models.CharField(max_length=30, choices=ORDER_STATUS_CHOICES, default=PENDING_VERIFICATION)
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES, default='upload')
    original_image_url = models.TextField(blank=True, default='')

    ocr_status = models.CharField(max_length=20, choices=OCR_STATUS_CHOICES, default=OCR_PENDING)
    ocr_confidence = models.FloatField(blank=True, null=True)
    extracted_text = models.TextField(blank=True, null=True)
    ocr_error = models.TextField(blank=True, null=True)
    ocr_processed_at = models.DateTimeField(blank=True, null=True)

    # {name, dosage, quantity}，OCR 抽取时字段可能为 null
    medication_details = models.JSONField(blank=True, null=True)

    user_verified = models.BooleanField(default=False)
    user_verification_notes = models.TextField(blank=True, null=True)

    cost = models.DecimalField(max_digits=10, decimal_places=2, blank=True, null=True)

    # 乐观锁：每次写入 +1
    version = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'prescription_orders'
        indexes = [
            models.Index(fields=['status', 'created_at'], name='order_status_created_idx'),
        ]

    @property
    def latest_review(self):
        return self.reviews.order_by('-reviewed_at').first()


class ImmutableModel(models.Model):
    """写入后不可修改、不可删除（审计用途）。"""

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError(f'{type(self).__name__} rows are append-only')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError(f'{type(self).__name__} rows are append-only')


class PharmacistReview(ImmutableModel):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(PrescriptionOrder, on_delete=models.PROTECT, related_name='reviews')
    reviewed_by = models.CharField(max_length=150)
    reviewed_at = models.DateTimeField(auto_now_add=True)
    approved = models.BooleanField()
    rejection_reason = models.TextField(blank=True, null=True)
    edited_details = models.JSONField(blank=True, null=True)
    pharmacist_notes = models.TextField(blank=True, null=True)
    calculated_cost = models.DecimalField(max_digits=10, decimal_places=2, blank=True, null=True)

    class Meta:
        db_table = 'pharmacist_reviews'


class OrderAuditEntry(ImmutableModel):
    """
    状态迁移的 append-only 事件日志。
    成功和被拒绝的迁移都会写一条（合规要求）。
    """

    OUTCOME_CHOICES = [
        ('applied', 'Applied'),
        ('rejected', 'Rejected'),
    ]

    order = models.ForeignKey(PrescriptionOrder, on_delete=models.PROTECT, related_name='audit_entries')
    from_status = models.CharField(max_length=30)
    to_status = models.CharField(max_length=30)
    actor = models.CharField(max_length=20)
    outcome = models.CharField(max_length=10, choices=OUTCOME_CHOICES)
    error_code = models.CharField(max_length=50, blank=True, null=True)
    message = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'order_audit_entries'
        ordering = ['created_at', 'id']


class OCRJob(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(PrescriptionOrder, on_delete=models.CASCADE, related_name='ocr_jobs')
    image_url = models.TextField()
    provider = models.CharField(max_length=30, blank=True, default='')
    status = models.CharField(max_length=20, choices=OCR_STATUS_CHOICES, default=OCR_PENDING)
    extracted_text = models.TextField(blank=True, null=True)
    confidence = models.FloatField(blank=True, null=True)
    error = models.TextField(blank=True, null=True)
    attempts = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        db_table = 'ocr_jobs'

    @property
    def is_terminal(self):
        return self.status in (OCR_COMPLETED, OCR_FAILED)


class PaymentAttempt(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(PrescriptionOrder, on_delete=models.PROTECT, related_name='payments')
    gateway = models.CharField(max_length=20, choices=GATEWAY_CHOICES)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3)
    status = models.CharField(max_length=20, choices=PAYMENT_STATUS_CHOICES, default=PAYMENT_PENDING)
    transaction_id = models.CharField(max_length=100, blank=True, null=True)
    error_message = models.TextField(blank=True, null=True)
    gateway_response = models.JSONField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'payment_attempts'
        indexes = [
            # webhook 按 (gateway, transaction_id) 找 attempt
            models.Index(fields=['gateway', 'transaction_id'], name='payment_gateway_txn_idx'),
        ]
        constraints = [
            # 每个订单最多一个 pending 或 succeeded 的 attempt：
            # 同一个 INSERT 里完成 "还没有成功支付" 的 compare-and-set
            models.UniqueConstraint(
                fields=['order'],
                condition=Q(status__in=[PAYMENT_PENDING, PAYMENT_SUCCEEDED]),
                name='one_open_or_succeeded_payment_per_order',
            ),
        ]


class PaymentLink(models.Model):
    MESSAGE_TYPE_CHOICES = [
        ('whatsapp', 'WhatsApp'),
        ('sms', 'SMS'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(PrescriptionOrder, on_delete=models.CASCADE, related_name='payment_links')
    token = models.CharField(max_length=64, unique=True)
    recipient_phone = models.CharField(max_length=20)
    message_type = models.CharField(max_length=10, choices=MESSAGE_TYPE_CHOICES)
    expires_at = models.DateTimeField()
    is_used = models.BooleanField(default=False)
    used_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'payment_links'
