from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Protocol

import httpx
import yaml

from pool_router.errors import CredentialError
from pool_router.storage import YamlFileStore

logger = logging.getLogger("uvicorn.error")

_UNUSABLE_STATUSES = frozenset({"banned", "ban", "forbidden", "disabled", "suspended"})
_UNUSABLE_REASON_MARKERS = (
    "invalid bearer",
    "invalid_bearer",
    "forbidden",
    "disabled",
    "banned",
)


@dataclass(slots=True, frozen=True)
class CredentialRecord:
    id: str
    access_token: str
    email: str = ""
    refresh_token: str | None = None
    expires_at: float | None = None
    status: str | None = None
    status_reason: str | None = None
    profile_arn: str | None = None
    token_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None

    def is_usable(self) -> bool:
        status = (self.status or "").strip().lower()
        if status in _UNUSABLE_STATUSES:
            return False
        reason = (self.status_reason or "").strip().lower()
        return not any(marker in reason for marker in _UNUSABLE_REASON_MARKERS)

    def expires_within(self, seconds: float, now: float) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - now < seconds

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> CredentialRecord:
        account_id = _clean(raw.get("id"))
        if not account_id:
            raise ValueError("Credential record is missing 'id'.")
        return cls(
            id=account_id,
            access_token=_clean(raw.get("accessToken")) or "",
            email=_clean(raw.get("email")) or "",
            refresh_token=_clean(raw.get("refreshToken")),
            expires_at=_parse_epoch(raw.get("expiresAt")),
            status=_clean(raw.get("status")),
            status_reason=_clean(raw.get("statusReason")),
            profile_arn=_clean(raw.get("profileArn")),
            token_url=_clean(raw.get("tokenUrl")),
            client_id=_clean(raw.get("clientId")),
            client_secret=_clean(raw.get("clientSecret")),
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "email": self.email,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": int(self.expires_at) if self.expires_at is not None else None,
            "status": self.status,
            "statusReason": self.status_reason,
            "profileArn": self.profile_arn,
            "tokenUrl": self.token_url,
            "clientId": self.client_id,
            "clientSecret": self.client_secret,
        }
        return {key: value for key, value in payload.items() if value is not None}


class CredentialStore(Protocol):
    async def list_accounts(self) -> list[CredentialRecord]: ...

    async def get(self, account_id: str) -> CredentialRecord | None: ...

    async def refresh(self, account_id: str) -> CredentialRecord: ...


class StaticCredentialStore:
    """In-memory store; ``refresher`` decides what a refresh yields."""

    def __init__(
        self,
        records: Iterable[CredentialRecord] = (),
        *,
        refresher: Callable[[CredentialRecord], CredentialRecord] | None = None,
    ) -> None:
        self._records: dict[str, CredentialRecord] = {
            record.id: record for record in records
        }
        self._refresher = refresher
        self.refresh_calls: list[str] = []

    def put(self, record: CredentialRecord) -> None:
        self._records[record.id] = record

    def remove(self, account_id: str) -> None:
        self._records.pop(account_id, None)

    async def list_accounts(self) -> list[CredentialRecord]:
        return list(self._records.values())

    async def get(self, account_id: str) -> CredentialRecord | None:
        return self._records.get(account_id)

    async def refresh(self, account_id: str) -> CredentialRecord:
        self.refresh_calls.append(account_id)
        record = self._records.get(account_id)
        if record is None:
            raise CredentialError(f"Unknown account '{account_id}'.")
        if self._refresher is None:
            raise CredentialError(f"Account '{account_id}' cannot be refreshed.")
        refreshed = self._refresher(record)
        self._records[account_id] = refreshed
        return refreshed


class YamlCredentialStore:
    """Accounts kept in a YAML file (``accounts: [...]``), refreshed via OAuth."""

    def __init__(
        self,
        path: str | Path,
        *,
        default_token_url: str | None = None,
        timeout_seconds: float = 30.0,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._store = YamlFileStore(path)
        self._default_token_url = default_token_url
        self._timeout_seconds = timeout_seconds
        self._client_factory = client_factory
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._store.path

    async def list_accounts(self) -> list[CredentialRecord]:
        return await asyncio.to_thread(self._read_records)

    async def get(self, account_id: str) -> CredentialRecord | None:
        for record in await self.list_accounts():
            if record.id == account_id:
                return record
        return None

    async def refresh(self, account_id: str) -> CredentialRecord:
        current = await self.get(account_id)
        if current is None:
            raise CredentialError(f"Unknown account '{account_id}'.")
        if not current.refresh_token:
            raise CredentialError(f"Account '{account_id}' has no refresh token.")
        token_url = current.token_url or self._default_token_url
        if not token_url:
            raise CredentialError(f"Account '{account_id}' has no token URL.")

        payload: dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": current.refresh_token,
        }
        if current.client_id:
            payload["client_id"] = current.client_id
        if current.client_secret:
            payload["client_secret"] = current.client_secret

        logger.info("oauth_refresh_start account=%s token_url=%s", account_id, token_url)
        try:
            async with self._client() as client:
                response = await client.post(
                    token_url,
                    data=payload,
                    headers={"Accept": "application/json"},
                )
        except httpx.RequestError as exc:
            raise CredentialError(
                f"Token refresh request failed for '{account_id}': {exc}"
            ) from exc

        if response.status_code >= 400:
            raise CredentialError(
                f"Token refresh for '{account_id}' failed with status "
                f"{response.status_code}: {response.text[:200]}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise CredentialError(
                f"Token refresh for '{account_id}' returned invalid JSON."
            ) from exc
        if not isinstance(body, dict):
            raise CredentialError(
                f"Token refresh for '{account_id}' returned an unexpected payload."
            )

        access_token = _clean(body.get("access_token") or body.get("accessToken"))
        if not access_token:
            raise CredentialError(
                f"Token refresh for '{account_id}' returned no access token."
            )
        refresh_token = (
            _clean(body.get("refresh_token") or body.get("refreshToken"))
            or current.refresh_token
        )
        expires_at = _extract_expires_at(body)
        refreshed = replace(
            current,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at if expires_at is not None else current.expires_at,
        )
        async with self._write_lock:
            await asyncio.to_thread(self._write_record, refreshed)
        logger.info(
            "oauth_refresh_success account=%s expires_at=%s",
            account_id,
            refreshed.expires_at,
        )
        return refreshed

    def _client(self) -> httpx.AsyncClient:
        if self._client_factory is not None:
            return self._client_factory()
        return httpx.AsyncClient(timeout=self._timeout_seconds)

    def _read_raw_accounts(self) -> list[Any]:
        try:
            payload = self._store.load(default={})
        except yaml.YAMLError as exc:
            raise CredentialError(f"Invalid YAML in '{self.path}': {exc}") from exc
        raw_accounts = payload.get("accounts") if isinstance(payload, dict) else None
        return raw_accounts if isinstance(raw_accounts, list) else []

    def _read_records(self) -> list[CredentialRecord]:
        records: list[CredentialRecord] = []
        for raw in self._read_raw_accounts():
            if not isinstance(raw, dict):
                continue
            try:
                records.append(CredentialRecord.from_payload(raw))
            except ValueError as exc:
                logger.warning("credential_record_skipped path=%s error=%s", self.path, exc)
        return records

    def _write_record(self, record: CredentialRecord) -> None:
        raw_accounts = self._read_raw_accounts()
        updated: list[Any] = []
        found = False
        for raw in raw_accounts:
            if isinstance(raw, dict) and _clean(raw.get("id")) == record.id:
                merged = dict(raw)
                merged.update(record.to_payload())
                updated.append(merged)
                found = True
            else:
                updated.append(raw)
        if not found:
            updated.append(record.to_payload())
        self._store.write({"accounts": updated})


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_epoch(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    # Millisecond timestamps are common in exported credential files.
    if parsed > 1e12:
        parsed /= 1000.0
    return parsed


def _extract_expires_at(body: dict[str, Any]) -> float | None:
    expires_at = _parse_epoch(body.get("expires_at") or body.get("expiresAt"))
    if expires_at is not None:
        return expires_at
    expires_in = _parse_epoch(body.get("expires_in") or body.get("expiresIn"))
    if expires_in is not None:
        return time.time() + expires_in
    return None
