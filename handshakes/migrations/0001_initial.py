import uuid

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('contacts', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Handshake',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('receiver_identifier', models.CharField(help_text='Telegram handle or email copied from the contact at creation', max_length=255)),
                ('receiver_identifier_key', models.CharField(db_index=True, editable=False, help_text='Normalized receiver identifier used for matching', max_length=255)),
                ('event_id', models.CharField(blank=True, max_length=64)),
                ('event_title', models.CharField(blank=True, max_length=255)),
                ('event_datetime', models.DateTimeField(blank=True, null=True)),
                ('initiator_wallet_address', models.CharField(max_length=58)),
                ('receiver_wallet_address', models.CharField(blank=True, max_length=58, null=True)),
                ('initiator_tx_signature', models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ('receiver_tx_signature', models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ('mint_fee_micro', models.BigIntegerField(help_text='Fee per side in microAlgos, captured at creation')),
                ('initiator_minted_at', models.DateTimeField(blank=True, help_text="When the initiator's fee payment was confirmed", null=True)),
                ('receiver_minted_at', models.DateTimeField(blank=True, help_text="When the receiver's fee payment was confirmed", null=True)),
                ('initiator_token_ref', models.CharField(blank=True, max_length=64, null=True)),
                ('receiver_token_ref', models.CharField(blank=True, max_length=64, null=True)),
                ('points_awarded', models.PositiveIntegerField(default=0)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('matched', 'Matched'), ('minted', 'Minted'), ('expired', 'Expired')], default='pending', max_length=10)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now, editable=False)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('expires_at', models.DateTimeField()),
                ('matched_at', models.DateTimeField(blank=True, null=True)),
                ('minted_at', models.DateTimeField(blank=True, null=True)),
                ('mint_locked_until', models.DateTimeField(blank=True, help_text='Lease held by an in-flight mint; prevents concurrent double minting', null=True)),
                ('contact', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='handshakes', to='contacts.contact')),
                ('initiator', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='initiated_handshakes', to=settings.AUTH_USER_MODEL)),
                ('receiver', models.ForeignKey(blank=True, help_text='Set when the addressed counterparty claims the handshake', null=True, on_delete=django.db.models.deletion.PROTECT, related_name='received_handshakes', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status', 'receiver_identifier_key'], name='handshake_status_ident_idx'),
                    models.Index(fields=['initiator', 'status'], name='handshake_initiator_idx'),
                    models.Index(fields=['receiver', 'status'], name='handshake_receiver_idx'),
                    models.Index(fields=['status', 'expires_at'], name='handshake_expiry_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('status__in', ['pending', 'matched'])), fields=('initiator', 'contact'), name='unique_active_handshake_per_contact'),
                    models.CheckConstraint(condition=models.Q(models.Q(('receiver__isnull', True), ('status__in', ['pending', 'expired'])), models.Q(('receiver__isnull', False), ('status__in', ['matched', 'minted'])), _connector='OR'), name='handshake_receiver_matches_status'),
                    models.CheckConstraint(condition=models.Q(models.Q(('status', 'minted'), _negated=True), models.Q(('initiator_tx_signature__isnull', False), ('receiver_tx_signature__isnull', False)), _connector='OR'), name='handshake_minted_requires_payments'),
                    models.CheckConstraint(condition=models.Q(('receiver', models.F('initiator')), _negated=True), name='handshake_distinct_parties'),
                ],
            },
        ),
    ]
