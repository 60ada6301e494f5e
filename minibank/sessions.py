"""
Session Token Module

Issues and verifies signed bearer tokens that bind a request to one
account number. The signing secret is injected at construction.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from .errors import ConfigurationError, InvalidTokenError, TokenExpiredError


ACCOUNT_CLAIM = "accountNumber"


class TokenManager:
    """HMAC-signed JWT issuer and verifier"""

    def __init__(self, secret: str, algorithm: str = "HS256",
                 expiry: timedelta = timedelta(hours=24)):
        if not secret:
            raise ConfigurationError("JWT secret must be set")
        if not algorithm.startswith("HS"):
            raise ConfigurationError(f"Unsupported signing algorithm: {algorithm}")
        self._secret = secret
        self.algorithm = algorithm
        self.expiry = expiry

    def issue(self, account_number: int, now: Optional[datetime] = None) -> str:
        """Sign a token for an account number"""
        now = now or datetime.now(timezone.utc)
        payload = {
            ACCOUNT_CLAIM: account_number,
            "iat": now,
            "exp": now + self.expiry,
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: Optional[str]) -> int:
        """
        Verify a token and return the account number it is bound to

        Raises:
            TokenExpiredError: the token is past its ``exp`` claim
            InvalidTokenError: the token is missing, malformed, badly signed,
                or carries no usable account number
        """
        if not token:
            raise InvalidTokenError("missing token")

        try:
            payload = jwt.decode(
                token, self._secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", ACCOUNT_CLAIM]}
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError("token expired")
        except jwt.InvalidTokenError:
            raise InvalidTokenError("invalid token")

        number = payload[ACCOUNT_CLAIM]
        if isinstance(number, bool) or not isinstance(number, int):
            raise InvalidTokenError("invalid token")
        return number
