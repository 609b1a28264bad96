"""
URL configuration for expense_portal project.

The `urlpatterns` list routes URLs to views. The JSON API lives under
`/api/v1/` and is defined in `ledger.urls`.
"""
from django.contrib import admin
from django.urls import path, include

from ledger import views as ledger_views

urlpatterns = [
    path("admin/", admin.site.urls),
    path("health/", ledger_views.health, name="health"),
    path("api/v1/", include(("ledger.urls", "ledger"), namespace="ledger")),
]
