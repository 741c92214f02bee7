import logging
import uuid

from django.conf import settings
from django.db import models, transaction
from django.utils import timezone

from .exceptions import BusinessRuleError

logger = logging.getLogger(__name__)


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class UserProfile(TimeStampedModel):
    ROLE_SUPERADMIN = "SUPERADMIN"
    ROLE_ADMIN = "ADMIN"
    ROLE_USER = "USER"
    ROLE_CHOICES = [
        (ROLE_SUPERADMIN, "Super admin"),
        (ROLE_ADMIN, "Admin"),
        (ROLE_USER, "User"),
    ]

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="profile"
    )
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default=ROLE_USER)
    phone = models.CharField(max_length=20, blank=True)

    def __str__(self):
        return f"Profile for {self.user.get_full_name() or self.user.email} ({self.role})"

    @property
    def is_admin(self):
        return self.role in (self.ROLE_SUPERADMIN, self.ROLE_ADMIN) or self.user.is_superuser


def user_is_admin(user) -> bool:
    if user.is_superuser:
        return True
    profile = getattr(user, "profile", None)
    return bool(profile and profile.is_admin)


class PaymentLink(TimeStampedModel):
    PROVIDER_BOLD = "BOLD"
    PROVIDER_WOMPI = "WOMPI"
    PROVIDER_CHOICES = [
        (PROVIDER_BOLD, "Bold"),
        (PROVIDER_WOMPI, "Wompi"),
    ]

    STATUS_ACTIVE = "ACTIVE"
    STATUS_PROCESSING = "PROCESSING"
    STATUS_PAID = "PAID"
    STATUS_EXPIRED = "EXPIRED"
    STATUS_CHOICES = [
        (STATUS_ACTIVE, "Active"),
        (STATUS_PROCESSING, "Processing"),
        (STATUS_PAID, "Paid"),
        (STATUS_EXPIRED, "Expired"),
    ]
    CLOSED_STATUSES = (STATUS_PAID, STATUS_EXPIRED)

    AMOUNT_OPEN = "OPEN"
    AMOUNT_CLOSE = "CLOSE"
    AMOUNT_TYPE_CHOICES = [
        (AMOUNT_OPEN, "Open"),
        (AMOUNT_CLOSE, "Closed"),
    ]

    PAYMENT_METHODS = {
        PROVIDER_BOLD: ["CREDIT_CARD", "PSE", "NEQUI", "BOTON_BANCOLOMBIA"],
        PROVIDER_WOMPI: ["CARD", "PSE", "NEQUI", "BANCOLOMBIA_TRANSFER"],
    }

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="payment_links"
    )
    provider = models.CharField(
        max_length=10, choices=PROVIDER_CHOICES, default=PROVIDER_WOMPI, editable=False
    )
    provider_link_id = models.CharField(max_length=191, unique=True, null=True, blank=True)
    provider_url = models.URLField(max_length=500, blank=True)

    title = models.CharField(max_length=255)
    description = models.CharField(max_length=100, blank=True)
    amount = models.PositiveIntegerField()
    amount_usd = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    amount_type = models.CharField(
        max_length=5, choices=AMOUNT_TYPE_CHOICES, default=AMOUNT_CLOSE
    )
    currency = models.CharField(max_length=3, default="COP")
    logo_url = models.URLField(max_length=500, blank=True)
    callback_url = models.URLField(max_length=500, blank=True)
    payment_methods = models.JSONField(default=list, blank=True)

    status = models.CharField(
        max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE, db_index=True
    )
    expiration_date = models.DateTimeField(null=True, blank=True)
    transaction_id = models.CharField(max_length=191, null=True, blank=True)
    payment_method = models.CharField(max_length=50, null=True, blank=True)
    payer_email = models.EmailField(null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.title} ({self.provider} {self.status})"

    @property
    def is_closed(self):
        return self.status in self.CLOSED_STATUSES

    @property
    def amount_display(self):
        return f"{self.amount:,}".replace(",", ".")

    @classmethod
    def default_payment_methods(cls, provider):
        return list(cls.PAYMENT_METHODS.get(provider, []))

    def is_visible_to(self, user) -> bool:
        return self.user_id == user.pk or user_is_admin(user)

    def ensure_payable(self):
        if self.is_closed:
            raise BusinessRuleError("Este link ya no está disponible para pagos", status=self.status)

    def ensure_deletable(self):
        if self.status == self.STATUS_PAID:
            raise BusinessRuleError("No se puede eliminar un link que ya fue pagado", status=self.status)

    # Lifecycle transitions. Every lifecycle write goes through _transition so
    # the PAID guard and the status change log apply uniformly.

    def mark_paid(self, transaction_id, payment_method=None, paid_at=None, payer_email=None):
        fields = {
            "transaction_id": transaction_id,
            "payment_method": payment_method,
            "paid_at": paid_at or timezone.now(),
        }
        if payer_email:
            fields["payer_email"] = payer_email
        return self._transition(self.STATUS_PAID, **fields)

    def mark_processing(self, transaction_id, payer_email=None):
        fields = {"transaction_id": transaction_id}
        if payer_email:
            fields["payer_email"] = payer_email
        return self._transition(self.STATUS_PROCESSING, **fields)

    def reactivate(self, transaction_id=None):
        """Back to ACTIVE after a rejected or declined attempt, keeping the link payable."""
        fields = {}
        if transaction_id:
            fields["transaction_id"] = transaction_id
        return self._transition(self.STATUS_ACTIVE, **fields)

    def void(self, clear_payer=False):
        fields = {"transaction_id": None, "payment_method": None, "paid_at": None}
        if clear_payer:
            fields["payer_email"] = None
        return self._transition(self.STATUS_ACTIVE, allow_from_paid=True, **fields)

    def expire(self):
        return self._transition(self.STATUS_EXPIRED)

    def sync_from_provider(self, info):
        """
        Merge a polled provider status into this link.

        Only a status that the provider can actually report and that differs
        from the stored one causes a write.
        """
        if not info.status or info.status == self.status:
            return False
        fields = {}
        if info.carries_transaction:
            fields["transaction_id"] = info.transaction_id
            fields["payment_method"] = info.payment_method
            fields["paid_at"] = timezone.now() if info.status == self.STATUS_PAID else None
        return self._transition(info.status, **fields)

    def _transition(self, new_status, allow_from_paid=False, **fields):
        old_status = self.status
        if old_status == self.STATUS_PAID and new_status != self.STATUS_PAID and not allow_from_paid:
            logger.warning(
                f"Refusing {old_status} -> {new_status} for paid link {self.pk}; only a void can reopen it"
            )
            return False

        self.status = new_status
        for name, value in fields.items():
            setattr(self, name, value)
        self.save(update_fields=["status", "updated_at", *fields])

        if old_status != new_status:
            logger.info(f"Payment link {self.pk} status changed: {old_status} -> {new_status}")
            if new_status == self.STATUS_PAID:
                from .payment_notifications import send_link_paid_notification

                transaction.on_commit(lambda: send_link_paid_notification(self))
        return True
