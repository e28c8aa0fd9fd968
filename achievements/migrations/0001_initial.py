import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('handshakes', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='TrustScore',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('total_handshakes', models.PositiveIntegerField(default=0)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='trust_score', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Trust Score',
                'verbose_name_plural': 'Trust Scores',
            },
        ),
        migrations.CreateModel(
            name='PointsLedgerEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('points', models.PositiveIntegerField()),
                ('reason', models.CharField(max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('handshake', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='points_entries', to='handshakes.handshake')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='points_entries', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Points Entry',
                'verbose_name_plural': 'Points Ledger',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['user', 'created_at'], name='points_user_created_idx')],
                'constraints': [models.UniqueConstraint(fields=('user', 'handshake'), name='unique_points_per_user_handshake')],
            },
        ),
    ]
