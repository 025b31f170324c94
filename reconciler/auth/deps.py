from __future__ import annotations

import json
from typing import Any, Dict, Optional

import jwt
import requests
from fastapi import HTTPException, Request

from reconciler.core.settings import S, Settings


class CognitoVerifier:
    """RS256 verification of Cognito user pool tokens against the pool's JWKS."""

    def __init__(self, settings: Settings = S):
        self.settings = settings
        self._jwks: Optional[Dict[str, Any]] = None

    @property
    def enabled(self) -> bool:
        return bool(self.settings.cognito_user_pool_id and self.settings.cognito_app_client_id)

    @property
    def issuer(self) -> str:
        region = self.settings.cognito_region or self.settings.aws_region
        return f"https://cognito-idp.{region}.amazonaws.com/{self.settings.cognito_user_pool_id}"

    def jwks(self) -> Dict[str, Any]:
        if self._jwks is None:
            resp = requests.get(f"{self.issuer}/.well-known/jwks.json", timeout=10)
            resp.raise_for_status()
            self._jwks = resp.json()
        return self._jwks

    def subject(self, token: str) -> str:
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except jwt.PyJWTError as exc:
            raise HTTPException(401, "Invalid token header") from exc

        jwk = next((k for k in self.jwks().get("keys", []) if k.get("kid") == kid), None)
        if jwk is None:
            raise HTTPException(401, "Unknown Cognito key id")

        try:
            claims = jwt.decode(
                token,
                jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk)),
                algorithms=["RS256"],
                audience=self.settings.cognito_app_client_id,
                issuer=self.issuer,
            )
        except jwt.ExpiredSignatureError as exc:
            raise HTTPException(401, "Token expired") from exc
        except jwt.PyJWTError as exc:
            raise HTTPException(401, "Invalid token") from exc

        expected_use = self.settings.cognito_expected_token_use
        if expected_use and claims.get("token_use") != expected_use:
            raise HTTPException(401, "Unexpected token use")

        sub = claims.get("sub") or claims.get("cognito:username") or claims.get("username")
        if not sub:
            raise HTTPException(401, "Token missing subject")
        return str(sub)


verifier = CognitoVerifier()


def extract_bearer_token(auth_header: str) -> str:
    if not auth_header:
        raise HTTPException(401, "Missing Authorization header")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "Invalid Authorization header")
    return token.strip()


async def get_authenticated_user_sub(request: Request) -> str:
    """
    Cognito JWT when configured.

    Dev fallback: X-User-Sub header, or Authorization: Bearer <user_id>
    """
    if verifier.enabled:
        return verifier.subject(extract_bearer_token(request.headers.get("authorization", "")))

    fallback_user = request.headers.get("x-user-sub")
    if fallback_user:
        return fallback_user
    return extract_bearer_token(request.headers.get("authorization", ""))
