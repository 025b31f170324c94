import asyncio
import json
import time
import unittest
from types import SimpleNamespace
from unittest.mock import patch

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import HTTPException

from reconciler.auth import deps
from reconciler.core.settings import Settings

COGNITO = Settings(
    aws_region="us-east-1",
    cognito_user_pool_id="us-east-1_pool",
    cognito_app_client_id="client-1",
    cognito_expected_token_use="access",
)
ISSUER = "https://cognito-idp.us-east-1.amazonaws.com/us-east-1_pool"


def run_async(coro):
    return asyncio.run(coro)


class TestAuthDepsFallback(unittest.TestCase):
    def setUp(self) -> None:
        disabled = deps.CognitoVerifier(Settings(cognito_user_pool_id="", cognito_app_client_id=""))
        patcher = patch.object(deps, "verifier", disabled)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_requires_header(self):
        req = SimpleNamespace(headers={})
        with self.assertRaises(HTTPException) as ctx:
            run_async(deps.get_authenticated_user_sub(req))
        self.assertEqual(ctx.exception.status_code, 401)

    def test_rejects_invalid_scheme(self):
        req = SimpleNamespace(headers={"authorization": "Token abc"})
        with self.assertRaises(HTTPException) as ctx:
            run_async(deps.get_authenticated_user_sub(req))
        self.assertEqual(ctx.exception.status_code, 401)

    def test_accepts_bearer(self):
        req = SimpleNamespace(headers={"authorization": "Bearer user-1"})
        self.assertEqual(run_async(deps.get_authenticated_user_sub(req)), "user-1")

    def test_accepts_x_user_sub(self):
        req = SimpleNamespace(headers={"x-user-sub": "user-2"})
        self.assertEqual(run_async(deps.get_authenticated_user_sub(req)), "user-2")


class TestAuthDepsCognito(unittest.TestCase):
    def setUp(self) -> None:
        self.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(self.key.public_key()))
        jwk["kid"] = "k1"
        verifier = deps.CognitoVerifier(COGNITO)
        verifier._jwks = {"keys": [jwk]}
        patcher = patch.object(deps, "verifier", verifier)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _token(self, **overrides) -> str:
        claims = {
            "sub": "cognito-user",
            "aud": "client-1",
            "iss": ISSUER,
            "token_use": "access",
            "exp": int(time.time()) + 600,
        }
        claims.update(overrides)
        return jwt.encode(claims, self.key, algorithm="RS256", headers={"kid": "k1"})

    def _call(self, token: str) -> str:
        req = SimpleNamespace(headers={"authorization": f"Bearer {token}"})
        return run_async(deps.get_authenticated_user_sub(req))

    def test_valid_token(self):
        self.assertEqual(self._call(self._token()), "cognito-user")

    def test_expired_token(self):
        with self.assertRaises(HTTPException) as ctx:
            self._call(self._token(exp=int(time.time()) - 60))
        self.assertEqual(ctx.exception.detail, "Token expired")

    def test_wrong_audience(self):
        with self.assertRaises(HTTPException):
            self._call(self._token(aud="someone-else"))

    def test_wrong_token_use(self):
        with self.assertRaises(HTTPException) as ctx:
            self._call(self._token(token_use="id"))
        self.assertEqual(ctx.exception.detail, "Unexpected token use")

    def test_x_user_sub_ignored_when_cognito_enabled(self):
        req = SimpleNamespace(headers={"x-user-sub": "spoofed"})
        with self.assertRaises(HTTPException):
            run_async(deps.get_authenticated_user_sub(req))


if __name__ == "__main__":
    unittest.main()
