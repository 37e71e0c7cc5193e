from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import quote

from convoaccess.config import MIN_JOIN_TOKEN_BYTES
from convoaccess.logging import get_logger, token_fingerprint
from convoaccess.service.errors import InvariantViolation, ValidationError
from convoaccess.storage.models import JoinLink, utcnow

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


class TokenGenerator:
    """Issues opaque, URL-safe join tokens.

    ``token_exists`` is consulted for every draw so a token is never handed out
    twice; it is expected to cover superseded tokens as well as live ones.
    Collisions at 128+ bits should not happen, so exhausting the retry budget
    is treated as a broken entropy source or a corrupted index.
    """

    def __init__(
        self,
        token_exists: Callable[[str], bool],
        *,
        token_bytes: int = 24,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_url: str = "http://localhost:8000",
        clock: Callable[[], datetime] = utcnow,
        entropy: Callable[[int], str] = secrets.token_urlsafe,
    ) -> None:
        if token_bytes < MIN_JOIN_TOKEN_BYTES:
            raise ValueError(f"token_bytes must be at least {MIN_JOIN_TOKEN_BYTES}")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._token_exists = token_exists
        self.token_bytes = token_bytes
        self.max_attempts = max_attempts
        self.base_url = base_url.rstrip("/")
        self._clock = clock
        self._entropy = entropy

    def new_token(self) -> str:
        for attempt in range(1, self.max_attempts + 1):
            token = self._entropy(self.token_bytes)
            if not self._token_exists(token):
                return token
            logger.warning(
                "join_token_collision",
                attempt=attempt,
                max_attempts=self.max_attempts,
                token_fingerprint=token_fingerprint(token),
            )
        logger.critical("join_token_retries_exhausted", attempts=self.max_attempts)
        raise InvariantViolation(
            "unable to issue a unique join token",
            detail={"attempts": self.max_attempts},
        )

    def issue(
        self,
        expires_in_days: int,
        usage_limit: Optional[int],
        created_by: str,
    ) -> JoinLink:
        """Build a fresh ``JoinLink``.

        ``expires_in_days=0`` yields a link that is already expired at issue
        time. ``usage_limit=None`` means unlimited uses.
        """
        if isinstance(expires_in_days, bool) or not isinstance(expires_in_days, int):
            raise ValidationError(
                "expires_in_days must be an integer",
                detail={"expires_in_days": expires_in_days},
            )
        if expires_in_days < 0:
            raise ValidationError(
                "expires_in_days cannot be negative",
                detail={"expires_in_days": expires_in_days},
            )
        if usage_limit is not None:
            if isinstance(usage_limit, bool) or not isinstance(usage_limit, int):
                raise ValidationError(
                    "usage_limit must be an integer",
                    detail={"usage_limit": usage_limit},
                )
            if usage_limit < 1:
                raise ValidationError(
                    "usage_limit must be a positive integer",
                    detail={"usage_limit": usage_limit},
                )
        now = self._clock()
        return JoinLink(
            token=self.new_token(),
            created_by=created_by,
            expires_at=now + timedelta(days=expires_in_days),
            usage_limit=usage_limit,
            usage_count=0,
            created_at=now,
        )

    def share_url(self, token: str) -> str:
        return f"{self.base_url}/v1/conversations/join/{quote(token, safe='')}"


__all__ = ["TokenGenerator", "DEFAULT_MAX_ATTEMPTS"]
