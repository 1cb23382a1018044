import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='PatientProfile',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('patient_name', models.CharField(max_length=200)),
                ('phone_number', models.CharField(blank=True, default='', max_length=20)),
                ('email', models.EmailField(blank=True, default='', max_length=254)),
                ('date_of_birth', models.DateField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'db_table': 'patient_profiles',
            },
        ),
        migrations.CreateModel(
            name='AccountRole',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('role', models.CharField(choices=[('patient', 'Patient'), ('pharmacist', 'Pharmacist'), ('doctor', 'Doctor'), ('system', 'System')], max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='account_role', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'account_roles',
            },
        ),
        migrations.CreateModel(
            name='PrescriptionOrder',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('patient_profile_id', models.CharField(db_index=True, max_length=64)),
                ('status', models.CharField(choices=[('pending_verification', 'Pending verification'), ('awaiting_verification', 'Awaiting verification'), ('awaiting_payment', 'Awaiting payment'), ('preparing', 'Preparing'), ('out_for_delivery', 'Out for delivery'), ('delivered', 'Delivered'), ('rejected', 'Rejected')], default='pending_verification', max_length=30)),
                ('source', models.CharField(choices=[('upload', 'Patient upload'), ('doctor', 'Doctor submission')], default='upload', max_length=20)),
                ('original_image_url', models.TextField(blank=True, default='')),
                ('ocr_status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('completed', 'Completed'), ('failed', 'Failed')], default='pending', max_length=20)),
                ('ocr_confidence', models.FloatField(blank=True, null=True)),
                ('extracted_text', models.TextField(blank=True, null=True)),
                ('ocr_error', models.TextField(blank=True, null=True)),
                ('ocr_processed_at', models.DateTimeField(blank=True, null=True)),
                ('medication_details', models.JSONField(blank=True, null=True)),
                ('user_verified', models.BooleanField(default=False)),
                ('user_verification_notes', models.TextField(blank=True, null=True)),
                ('cost', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('version', models.PositiveIntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'prescription_orders',
                'indexes': [models.Index(fields=['status', 'created_at'], name='order_status_created_idx')],
            },
        ),
        migrations.CreateModel(
            name='PharmacistReview',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('reviewed_by', models.CharField(max_length=150)),
                ('reviewed_at', models.DateTimeField(auto_now_add=True)),
                ('approved', models.BooleanField()),
                ('rejection_reason', models.TextField(blank=True, null=True)),
                ('edited_details', models.JSONField(blank=True, null=True)),
                ('pharmacist_notes', models.TextField(blank=True, null=True)),
                ('calculated_cost', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='reviews', to='rxorders.prescriptionorder')),
            ],
            options={
                'db_table': 'pharmacist_reviews',
            },
        ),
        migrations.CreateModel(
            name='OrderAuditEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('from_status', models.CharField(max_length=30)),
                ('to_status', models.CharField(max_length=30)),
                ('actor', models.CharField(max_length=20)),
                ('outcome', models.CharField(choices=[('applied', 'Applied'), ('rejected', 'Rejected')], max_length=10)),
                ('error_code', models.CharField(blank=True, max_length=50, null=True)),
                ('message', models.TextField(blank=True, default='')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='audit_entries', to='rxorders.prescriptionorder')),
            ],
            options={
                'db_table': 'order_audit_entries',
                'ordering': ['created_at', 'id'],
            },
        ),
        migrations.CreateModel(
            name='OCRJob',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('image_url', models.TextField()),
                ('provider', models.CharField(blank=True, default='', max_length=30)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('completed', 'Completed'), ('failed', 'Failed')], default='pending', max_length=20)),
                ('extracted_text', models.TextField(blank=True, null=True)),
                ('confidence', models.FloatField(blank=True, null=True)),
                ('error', models.TextField(blank=True, null=True)),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('processed_at', models.DateTimeField(blank=True, null=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='ocr_jobs', to='rxorders.prescriptionorder')),
            ],
            options={
                'db_table': 'ocr_jobs',
            },
        ),
        migrations.CreateModel(
            name='PaymentAttempt',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('gateway', models.CharField(choices=[('stripe', 'Stripe'), ('paypal', 'PayPal'), ('mtn', 'MTN Mobile Money')], max_length=20)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=10)),
                ('currency', models.CharField(max_length=3)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('succeeded', 'Succeeded'), ('failed', 'Failed')], default='pending', max_length=20)),
                ('transaction_id', models.CharField(blank=True, max_length=100, null=True)),
                ('error_message', models.TextField(blank=True, null=True)),
                ('gateway_response', models.JSONField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='rxorders.prescriptionorder')),
            ],
            options={
                'db_table': 'payment_attempts',
            },
        ),
        migrations.AddConstraint(
            model_name='paymentattempt',
            constraint=models.UniqueConstraint(
                condition=models.Q(('status__in', ['pending', 'succeeded'])),
                fields=('order',),
                name='one_open_or_succeeded_payment_per_order',
            ),
        ),
        migrations.CreateModel(
            name='PaymentLink',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('token', models.CharField(max_length=64, unique=True)),
                ('recipient_phone', models.CharField(max_length=20)),
                ('message_type', models.CharField(choices=[('whatsapp', 'WhatsApp'), ('sms', 'SMS')], max_length=10)),
                ('expires_at', models.DateTimeField()),
                ('is_used', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='payment_links', to='rxorders.prescriptionorder')),
            ],
            options={
                'db_table': 'payment_links',
            },
        ),
    ]
