from django.urls import path, include
from rest_framework.routers import SimpleRouter
from .views import AppVersionViewSet, check_update, download, upload

router = SimpleRouter(trailing_slash=False)
router.register(r'versions', AppVersionViewSet, basename='version')

urlpatterns = [
    path('check-update', check_update, name='check-update'),
    path('download/<str:version>', download, name='download'),
    path('upload', upload, name='upload'),
    path('', include(router.urls)),
]
