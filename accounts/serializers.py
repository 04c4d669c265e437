from rest_framework_simplejwt.serializers import TokenObtainPairSerializer
from django.contrib.auth import get_user_model
from rest_framework import serializers

User = get_user_model()


class LoginSerializer(TokenObtainPairSerializer):
    """
    JWT login with email + password.

    Emails are matched case-insensitively by normalising before SimpleJWT
    authenticates; the token carries the user's name and role as claims.
    """

    def validate(self, attrs):
        email = (attrs.get("email") or "").strip()
        password = attrs.get("password")

        if not email or not password:
            raise serializers.ValidationError('Must include "email" and "password".')

        user = User.objects.filter(email__iexact=email).first()
        if user is None or not user.check_password(password):
            raise serializers.ValidationError(
                {"detail": "No active account found with the given credentials"}
            )

        attrs["email"] = user.email
        return super().validate(attrs)

    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)

        token["name"] = user.name
        token["role"] = user.role
        return token


class CurrentUserSerializer(serializers.ModelSerializer):
    """Who am I: the account plus the provider profile id, when there is one."""

    provider_id = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = ["id", "email", "name", "phone", "role", "is_staff", "provider_id"]
        read_only_fields = fields

    def get_provider_id(self, obj):
        profile = getattr(obj, "provider_profile", None)
        return profile.id if profile else None
