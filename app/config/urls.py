"""
Root URL map.

    /admin/                     Django admin (transactions, payout profiles, settings)
    /health/                    liveness/readiness for load balancers
    /api/v1/settlement/         checkout and transaction actions, see settlement.urls
"""

from django.contrib import admin
from django.urls import include, path

from core.views import health_check

admin.site.site_header = admin.site.site_title = "Settlement Admin"
admin.site.index_title = "Escrow settlement"

urlpatterns = [
    path("admin/", admin.site.urls),
    path("health/", health_check, name="health_check"),
    path("api/v1/settlement/", include("settlement.urls")),
]
