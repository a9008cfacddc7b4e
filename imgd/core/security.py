"""
imgd - Credential Authority

Loads upload token records once at startup and resolves a presented
credential into an Identity.

Credential presentation (in order of priority):
1. X-Upload-Token: <token>
2. Authorization: Bearer <token>

The raw token never leaves this module except inside the loaded records;
logs, rate-limit keys and CLI listings use `token_id`, a short SHA-256
fingerprint.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from fastapi import Header, Request
from loguru import logger
from pydantic import BaseModel, Field

from .errors import UnauthorizedError

LEGACY_TOKEN_NAME = "legacy-default"
TOKEN_ID_LENGTH = 12
BEARER_PREFIX = "Bearer "


# =============================================================================
# On-disk record format
# =============================================================================


class TokenEntry(BaseModel):
    """One record of the token file."""

    name: str
    token: str
    expires_at: str | None = None
    rate_limit_per_minute: int | None = Field(default=None, ge=0)


class TokenFile(BaseModel):
    """Token file document: {"tokens": [...]}."""

    tokens: list[TokenEntry] = Field(default_factory=list)


def token_fingerprint(token: str) -> str:
    """Stable short fingerprint of a raw token, safe for logs."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:TOKEN_ID_LENGTH]


def parse_expires_at(raw: str) -> datetime:
    """
    Parse an RFC 3339 timestamp into an aware UTC datetime.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    value = raw.strip()
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def load_token_file(path: Path) -> TokenFile:
    """
    Read a token file. A missing file is an empty record set.

    Raises:
        pydantic.ValidationError: If the document is malformed
        OSError: If the file exists but cannot be read
    """
    if not path.exists():
        return TokenFile()
    return TokenFile.model_validate_json(path.read_text(encoding="utf-8"))


def save_token_file(path: Path, file: TokenFile) -> None:
    """Atomically write a token file readable only by its owner."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(file.model_dump_json(indent=2, exclude_none=True) + "\n", encoding="utf-8")
    os.chmod(tmp, 0o600)
    os.replace(tmp, path)


# =============================================================================
# Token store
# =============================================================================


@dataclass(frozen=True)
class Identity:
    """Authorization context attached to an admitted upload."""

    name: str
    token_id: str
    rate_limit_per_minute: int | None = None


@dataclass(frozen=True)
class TokenPolicy:
    name: str
    token_id: str
    expires_at: datetime | None = None
    rate_limit_per_minute: int | None = None

    @classmethod
    def from_entry(cls, entry: TokenEntry) -> "TokenPolicy":
        return cls(
            name=entry.name,
            token_id=token_fingerprint(entry.token),
            expires_at=parse_expires_at(entry.expires_at) if entry.expires_at else None,
            rate_limit_per_minute=entry.rate_limit_per_minute,
        )


class TokenStore:
    """
    Immutable map of raw token -> policy.

    Built once per process; picking up changes to the token file requires a
    restart.
    """

    def __init__(self, policies: Mapping[str, TokenPolicy]):
        self._policies = MappingProxyType(dict(policies))

    @classmethod
    def load(cls, tokens_file: Path | None = None, legacy_token: str | None = None) -> "TokenStore":
        """
        Build the store from a token file and/or a legacy shared secret.

        Raises:
            ValueError: If no token is configured or a record is invalid
        """
        policies: dict[str, TokenPolicy] = {}

        if tokens_file is not None:
            for entry in load_token_file(tokens_file).tokens:
                policies[entry.token] = TokenPolicy.from_entry(entry)
            logger.info(f"Loaded {len(policies)} upload token(s) from {tokens_file}")

        if legacy_token:
            policies.setdefault(
                legacy_token,
                TokenPolicy(name=LEGACY_TOKEN_NAME, token_id=token_fingerprint(legacy_token)),
            )

        if not policies:
            raise ValueError("no upload token configured; set UPLOAD_TOKEN or TOKENS_FILE")

        return cls(policies)

    def __len__(self) -> int:
        return len(self._policies)

    def authorize(self, raw: str, now: datetime | None = None) -> Identity | None:
        """Resolve a raw token, or None if it is unknown or expired."""
        policy = self._policies.get(raw)
        if policy is None:
            return None

        if policy.expires_at is not None:
            if (now or datetime.now(timezone.utc)) > policy.expires_at:
                return None

        return Identity(
            name=policy.name,
            token_id=policy.token_id,
            rate_limit_per_minute=policy.rate_limit_per_minute,
        )


# =============================================================================
# Request authentication
# =============================================================================


def extract_credential(x_upload_token: str | None, authorization: str | None) -> str | None:
    """
    Pick the presented credential.

    A non-empty X-Upload-Token wins outright; otherwise a non-empty Bearer
    token. Empty values are treated as absent.
    """
    if x_upload_token:
        return x_upload_token

    if authorization and authorization.startswith(BEARER_PREFIX):
        token = authorization[len(BEARER_PREFIX):]
        if token:
            return token

    return None


async def require_identity(
    request: Request,
    x_upload_token: str | None = Header(default=None, alias="X-Upload-Token"),
    authorization: str | None = Header(default=None),
) -> Identity:
    """
    FastAPI dependency authorizing an upload request.

    Raises:
        UnauthorizedError: If no credential is presented, or it is unknown
            or expired. The client cannot tell these cases apart.
    """
    credential = extract_credential(x_upload_token, authorization)
    if credential is None:
        logger.warning("Upload rejected: no credential presented")
        raise UnauthorizedError("missing_credential")

    identity = request.app.state.imgd.tokens.authorize(credential)
    if identity is None:
        logger.warning(f"Upload rejected: invalid credential (token_id={token_fingerprint(credential)})")
        raise UnauthorizedError("invalid_credential")

    logger.debug(f"Authenticated upload token {identity.name} ({identity.token_id})")
    return identity
