from django.urls import path
from . import api_views
from rest_framework_simplejwt.views import TokenRefreshView

app_name = "accounts"

urlpatterns = [
    path("login/", api_views.LoginAPIView.as_view(), name="api_login"),
    path("token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
    path("me/", api_views.CurrentUserAPIView.as_view(), name="api_me"),
]
