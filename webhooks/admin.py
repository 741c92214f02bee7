import json

from django.contrib import admin

from .models import WebhookLog


@admin.register(WebhookLog)
class WebhookLogAdmin(admin.ModelAdmin):
    list_display = ["provider", "event_type", "event_id", "payment_id", "received_at", "processed", "replay_count"]
    list_filter = ["provider", "processed", "event_type", "received_at"]
    search_fields = ["event_id", "payment_id"]
    readonly_fields = [
        "provider", "event_id", "event_type", "payment_id", "signature_header",
        "processed", "processed_at", "received_at", "replay_count",
        "payload_pretty", "headers_pretty",
    ]
    exclude = ["payload", "headers"]
    actions = ["replay_webhooks"]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def payload_pretty(self, obj):
        return json.dumps(obj.payload, indent=2)
    payload_pretty.short_description = "Payload"

    def headers_pretty(self, obj):
        return json.dumps(obj.headers, indent=2)
    headers_pretty.short_description = "Headers"

    @admin.action(description="Replay selected webhooks")
    def replay_webhooks(self, request, queryset):
        from .views import replay_webhook
        count = 0
        for log in queryset:
            replay_webhook(log)
            count += 1
        self.message_user(request, f"{count} webhooks replayed successfully.")
