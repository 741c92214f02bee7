from django.contrib import admin

from .models import PaymentLink, UserProfile


@admin.register(PaymentLink)
class PaymentLinkAdmin(admin.ModelAdmin):
    list_display = ("title", "provider", "status", "amount", "user", "paid_at", "created_at")
    list_filter = ("provider", "status", "amount_type", "created_at")
    search_fields = ("id", "title", "provider_link_id", "transaction_id", "payer_email", "user__email")
    readonly_fields = ("id", "provider", "provider_link_id", "provider_url", "transaction_id", "paid_at", "created_at", "updated_at")


@admin.register(UserProfile)
class UserProfileAdmin(admin.ModelAdmin):
    list_display = ("user", "role", "phone")
    list_filter = ("role",)
    search_fields = ("user__email", "phone")
