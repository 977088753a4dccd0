from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="IdempotencyRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "key",
                    models.CharField(help_text="Client supplied Idempotency-Key header value", max_length=255),
                ),
                (
                    "scope",
                    models.CharField(
                        help_text="Operation and caller the key applies to, e.g. 'subscription_create:user_1:owner'",
                        max_length=255,
                    ),
                ),
                (
                    "result",
                    models.JSONField(blank=True, help_text="Serialized response data returned on replay", null=True),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("expires_at", models.DateTimeField(db_index=True)),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("key", "scope"), name="uniq_idempotency_key_scope"),
                ],
            },
        ),
    ]
