from django.urls import path

from . import views

app_name = "links"

urlpatterns = [
    # Dashboard API
    path("api/links", views.api_links, name="api-links"),
    path("api/links/<uuid:pk>", views.api_link_detail, name="api-link-detail"),
    path("api/bold/payment-methods", views.api_bold_payment_methods, name="api-bold-payment-methods"),
    path("api/upload", views.api_upload, name="api-upload"),

    # Public checkout
    path("api/pay/<uuid:link_id>", views.api_pay, name="api-pay"),
    path("pay/callback", views.pay_callback, name="pay-callback"),
    path("pay/<str:link_id>/", views.pay_page, name="pay-page"),
]
