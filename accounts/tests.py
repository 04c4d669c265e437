"""
Tests for account authentication.

Covers:
- JWT login by email (case-insensitive) with role claims
- Rejected credentials
- Current-user endpoint and the provider id it exposes
- Role permissions and the provider ownership check
"""

from types import SimpleNamespace

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from accounts.permissions import IsClient, IsProvider, can_manage_provider
from providers.models import ProviderProfile

User = get_user_model()


class AccountTestMixin:
    def setUp(self):
        self.client = APIClient()
        self.provider_user = User.objects.create_user(
            email="provider@example.com",
            password="testpass123",
            name="Dana Provider",
            role="PROVIDER",
        )
        self.provider = ProviderProfile.objects.create(user=self.provider_user)
        self.client_user = User.objects.create_user(
            email="client@example.com",
            password="testpass123",
            name="Sam Client",
        )


class LoginAPITests(AccountTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.url = reverse("accounts:api_login")

    def test_login_returns_token_pair(self):
        response = self.client.post(
            self.url, {"email": "provider@example.com", "password": "testpass123"}, format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn("refresh", response.data)
        token = AccessToken(response.data["access"])
        self.assertEqual(token["role"], "PROVIDER")
        self.assertEqual(token["name"], "Dana Provider")

    def test_email_is_case_insensitive(self):
        response = self.client.post(
            self.url, {"email": "  CLIENT@Example.COM ", "password": "testpass123"}, format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_wrong_password(self):
        response = self.client.post(
            self.url, {"email": "client@example.com", "password": "nope"}, format="json",
        )
        self.assertIn(response.status_code, (status.HTTP_400_BAD_REQUEST, status.HTTP_401_UNAUTHORIZED))
        self.assertNotIn("access", response.data)

    def test_unknown_email(self):
        response = self.client.post(
            self.url, {"email": "ghost@example.com", "password": "testpass123"}, format="json",
        )
        self.assertIn(response.status_code, (status.HTTP_400_BAD_REQUEST, status.HTTP_401_UNAUTHORIZED))

    def test_token_authenticates_requests(self):
        response = self.client.post(
            self.url, {"email": "client@example.com", "password": "testpass123"}, format="json",
        )
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {response.data['access']}")

        response = self.client.get(reverse("accounts:api_me"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["email"], "client@example.com")


class CurrentUserAPITests(AccountTestMixin, TestCase):
    def test_provider_sees_provider_id(self):
        self.client.force_authenticate(user=self.provider_user)
        response = self.client.get(reverse("accounts:api_me"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["provider_id"], self.provider.id)
        self.assertEqual(response.data["role"], "PROVIDER")

    def test_client_has_no_provider_id(self):
        self.client.force_authenticate(user=self.client_user)
        response = self.client.get(reverse("accounts:api_me"))
        self.assertIsNone(response.data["provider_id"])
        self.assertEqual(response.data["role"], "CLIENT")

    def test_requires_authentication(self):
        response = self.client.get(reverse("accounts:api_me"))
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))


class PermissionTests(AccountTestMixin, TestCase):
    def test_role_permissions(self):
        provider_request = SimpleNamespace(user=self.provider_user)
        client_request = SimpleNamespace(user=self.client_user)

        self.assertTrue(IsProvider().has_permission(provider_request, None))
        self.assertFalse(IsProvider().has_permission(client_request, None))
        self.assertTrue(IsClient().has_permission(client_request, None))
        self.assertFalse(IsClient().has_permission(provider_request, None))

    def test_can_manage_provider(self):
        staff = User.objects.create_user(
            email="staff@example.com", password="testpass123", name="Staff", is_staff=True,
        )
        self.assertTrue(can_manage_provider(self.provider_user, self.provider))
        self.assertTrue(can_manage_provider(staff, self.provider))
        self.assertFalse(can_manage_provider(self.client_user, self.provider))
        self.assertFalse(can_manage_provider(AnonymousUser(), self.provider))
