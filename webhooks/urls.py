from django.urls import path

from . import views

app_name = "webhooks"

urlpatterns = [
    path("bold/", views.bold_webhook, name="bold-webhook"),
    path("wompi/", views.wompi_webhook, name="wompi-webhook"),
]
