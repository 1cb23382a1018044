from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('rxorders', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='paymentlink',
            name='used_at',
            field=models.DateTimeField(blank=True, null=True),
        ),
        migrations.AddIndex(
            model_name='paymentattempt',
            index=models.Index(fields=['gateway', 'transaction_id'], name='payment_gateway_txn_idx'),
        ),
    ]
