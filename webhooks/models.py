from django.db import models


class WebhookLog(models.Model):
    """
    Ledger of every accepted provider event.

    ``event_id`` is the idempotency key: a row existing for an id means the
    event was already handled, whatever ``processed`` says.
    """

    PROVIDER_BOLD = "BOLD"
    PROVIDER_WOMPI = "WOMPI"
    PROVIDER_CHOICES = [
        (PROVIDER_BOLD, "Bold"),
        (PROVIDER_WOMPI, "Wompi"),
    ]

    provider = models.CharField(max_length=10, choices=PROVIDER_CHOICES)
    event_id = models.CharField(max_length=191, unique=True)
    event_type = models.CharField(max_length=100)
    payment_id = models.CharField(max_length=191, blank=True, null=True)
    payload = models.JSONField()
    headers = models.JSONField(default=dict, blank=True)
    signature_header = models.CharField(max_length=255, blank=True)
    processed = models.BooleanField(default=False)
    processed_at = models.DateTimeField(null=True, blank=True)
    received_at = models.DateTimeField(auto_now_add=True)
    replay_count = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ("-received_at",)

    def __str__(self):
        return f"{self.provider} {self.event_type} {self.event_id} @ {self.received_at:%Y-%m-%d %H:%M:%S}"
