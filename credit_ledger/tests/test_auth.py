"""
Bearer token resolution with signed ID tokens (RS256, Firebase style).
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient

from credit_ledger.api import create_app
from credit_ledger.auth import JWTTokenVerifier
from credit_ledger.config import Settings
from credit_ledger.errors import Unauthorized


AUDIENCE = "photo-styling-app"
USER_ID = "firebase-uid-jwt"


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def public_pem(signing_key):
    return signing_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


@pytest.fixture
def verifier(public_pem):
    return JWTTokenVerifier(public_pem, ["RS256"], audience=AUDIENCE)


def _token(key, **claims) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": USER_ID, "aud": AUDIENCE, "iat": now, "exp": now + timedelta(hours=1)}
    payload.update(claims)
    payload = {k: v for k, v in payload.items() if v is not None}
    return jwt.encode(payload, key, algorithm="RS256")


class TestJWTTokenVerifier:
    def test_resolves_subject(self, verifier, signing_key):
        assert verifier(_token(signing_key)) == USER_ID

    def test_prefers_user_id_claim(self, verifier, signing_key):
        assert verifier(_token(signing_key, user_id="firebase-uid-claim")) == "firebase-uid-claim"

    def test_expired_token(self, verifier, signing_key):
        expired = _token(signing_key, exp=datetime.now(timezone.utc) - timedelta(minutes=5))
        with pytest.raises(Unauthorized):
            verifier(expired)

    def test_wrong_audience(self, verifier, signing_key):
        with pytest.raises(Unauthorized):
            verifier(_token(signing_key, aud="some-other-project"))

    def test_foreign_signature(self, verifier):
        other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        with pytest.raises(Unauthorized):
            verifier(_token(other_key))

    def test_missing_subject(self, verifier, signing_key):
        with pytest.raises(Unauthorized):
            verifier(_token(signing_key, sub=None))


class TestJWTOverHTTP:
    @pytest.fixture
    def client(self, public_pem):
        settings = Settings(auth_jwt_key=public_pem, auth_jwt_algorithms="RS256", auth_jwt_audience=AUDIENCE)
        return TestClient(create_app(settings))

    def test_register_with_signed_token(self, client, signing_key):
        response = client.post("/users/register", headers={"Authorization": f"Bearer {_token(signing_key)}"})

        assert response.status_code == 200
        assert response.json()["data"]["user_id"] == USER_ID

    @pytest.mark.parametrize("claims", [
        {"exp": datetime.now(timezone.utc) - timedelta(minutes=5)},
        {"aud": "some-other-project"},
    ])
    def test_rejected_tokens_give_401(self, client, signing_key, claims):
        response = client.get("/credits/balance", headers={"Authorization": f"Bearer {_token(signing_key, **claims)}"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
