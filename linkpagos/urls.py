from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("accounts/", include("allauth.urls")),
    path("api/webhook/", include("webhooks.urls")),
    path("", include("links.urls")),
]
