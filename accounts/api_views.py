from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework_simplejwt.views import TokenObtainPairView

from .serializers import CurrentUserSerializer, LoginSerializer


class LoginAPIView(TokenObtainPairView):
    serializer_class = LoginSerializer


class CurrentUserAPIView(APIView):
    """
    GET /api/auth/me/

    Returns the authenticated account, including its provider id so a
    provider's client code knows which calendar it manages.
    """

    def get(self, request):
        serializer = CurrentUserSerializer(request.user)
        return Response(serializer.data, status=status.HTTP_200_OK)
