"""
URL configuration for the OTA update server.
"""
from django.urls import path, include
from releases.views import health

urlpatterns = [
    path('api/v1/ota/', include('releases.urls')),
    path('health', health, name='health'),
]
