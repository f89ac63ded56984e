from __future__ import annotations

import dataclasses
from collections.abc import Collection, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from pool_router.errors import truncate_error

if TYPE_CHECKING:
    from pool_router.config import ProxyConfig
    from pool_router.credentials import CredentialRecord


class AccountStatus(str, Enum):
    ACTIVE = "active"
    COOLDOWN = "cooldown"
    ERROR = "error"
    DISABLED = "disabled"


class Outcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    QUOTA = "quota"
    AUTH = "auth"
    FATAL = "fatal"


@dataclass(slots=True)
class CooldownPolicy:
    transient_seconds: float = 15.0
    quota_seconds: float = 300.0
    auth_seconds: float = 60.0
    max_seconds: float = 3600.0

    @classmethod
    def from_config(cls, config: ProxyConfig) -> CooldownPolicy:
        return cls(
            transient_seconds=config.transient_cooldown_sec,
            quota_seconds=config.quota_cooldown_sec,
            auth_seconds=config.auth_cooldown_sec,
            max_seconds=config.cooldown_max_sec,
        )

    def backoff(self, outcome: Outcome, consecutive_failures: int) -> float | None:
        if outcome == Outcome.QUOTA:
            base = self.quota_seconds
        elif outcome == Outcome.AUTH:
            base = self.auth_seconds
        elif outcome == Outcome.TRANSIENT:
            base = self.transient_seconds
        else:
            return None
        exponent = max(0, consecutive_failures - 1)
        # Cap the exponent so long failure streaks cannot overflow the float.
        return min(base * (2 ** min(exponent, 32)), self.max_seconds)


@dataclass(slots=True)
class Account:
    id: str
    email: str = ""
    status: AccountStatus = AccountStatus.ACTIVE
    enabled: bool = True
    last_used: float = 0.0
    request_count: int = 0
    error_count: int = 0
    cooldown_until: float | None = None
    last_error: str | None = None
    profile_arn: str | None = None
    consecutive_failures: int = 0

    def is_eligible(self, now: float) -> bool:
        if not self.enabled or self.status == AccountStatus.DISABLED:
            return False
        return self.cooldown_until is None or self.cooldown_until <= now

    def to_view(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "enabled": self.enabled,
            "status": self.status.value,
            "lastUsed": int(self.last_used),
            "requestCount": self.request_count,
            "errorCount": self.error_count,
            "cooldownUntil": (
                int(self.cooldown_until) if self.cooldown_until is not None else None
            ),
            "lastError": self.last_error,
            "profileArn": self.profile_arn,
        }


class AccountPool:
    """Per-kind account health, cooldown and selection state.

    Not synchronized on its own: every call goes through ``ProxyStore``, which
    serializes selection and outcome reporting under one lock. Accounts handed
    out are copies.
    """

    def __init__(self, policy: CooldownPolicy | None = None) -> None:
        self._policy = policy or CooldownPolicy()
        self._order: list[str] = []
        self._accounts: dict[str, Account] = {}

    def set_policy(self, policy: CooldownPolicy) -> None:
        self._policy = policy

    def __len__(self) -> int:
        return len(self._order)

    def ids(self) -> list[str]:
        return list(self._order)

    def get(self, account_id: str) -> Account | None:
        account = self._accounts.get(account_id)
        return dataclasses.replace(account) if account is not None else None

    def sync(
        self,
        records: Iterable[CredentialRecord],
        selected_ids: Collection[str] = (),
    ) -> None:
        selected = set(selected_ids)
        order: list[str] = []
        accounts: dict[str, Account] = {}
        for record in records:
            if selected and record.id not in selected:
                continue
            if not record.access_token.strip() or record.id in accounts:
                continue
            previous = self._accounts.get(record.id)
            usable = record.is_usable()
            if previous is not None:
                account = dataclasses.replace(
                    previous,
                    email=record.email,
                    profile_arn=record.profile_arn,
                )
            else:
                account = Account(
                    id=record.id,
                    email=record.email,
                    profile_arn=record.profile_arn,
                )
            account.enabled = usable
            if not usable:
                account.status = AccountStatus.DISABLED
                account.last_error = truncate_error(record.status_reason) or account.last_error
            elif account.status == AccountStatus.DISABLED:
                account.status = AccountStatus.ACTIVE
            order.append(record.id)
            accounts[record.id] = account
        self._order = order
        self._accounts = accounts

    def designated_account_id(self, selected_ids: Collection[str] = ()) -> str | None:
        for account_id in selected_ids:
            if account_id in self._accounts:
                return account_id
        return self._order[0] if self._order else None

    def _candidates(
        self,
        candidate_ids: Collection[str],
        exclude: Collection[str],
    ) -> list[tuple[int, Account]]:
        allowed = set(candidate_ids)
        excluded = set(exclude)
        return [
            (index, self._accounts[account_id])
            for index, account_id in enumerate(self._order)
            if (not allowed or account_id in allowed) and account_id not in excluded
        ]

    def select_account(
        self,
        candidate_ids: Collection[str],
        now: float,
        exclude: Collection[str] = (),
    ) -> Account | None:
        eligible = [
            (index, account)
            for index, account in self._candidates(candidate_ids, exclude)
            if account.is_eligible(now)
        ]
        if not eligible:
            return None
        _, chosen = min(
            eligible,
            key=lambda item: (item[1].last_used, item[1].error_count, item[0]),
        )
        chosen.last_used = now
        return dataclasses.replace(chosen)

    def fallback_account(
        self,
        candidate_ids: Collection[str],
        now: float,
        exclude: Collection[str] = (),
    ) -> Account | None:
        cooling = [
            (index, account)
            for index, account in self._candidates(candidate_ids, exclude)
            if account.enabled and account.status != AccountStatus.DISABLED
        ]
        if not cooling:
            return None
        _, chosen = min(
            cooling,
            key=lambda item: (
                (item[1].cooldown_until or now) - now,
                item[1].error_count,
                item[0],
            ),
        )
        chosen.last_used = now
        return dataclasses.replace(chosen)

    def report_outcome(
        self,
        account_id: str,
        outcome: Outcome,
        now: float,
        error: str | None = None,
    ) -> Account | None:
        account = self._accounts.get(account_id)
        if account is None:
            return None

        if outcome == Outcome.SUCCESS:
            account.consecutive_failures = 0
            account.request_count += 1
            account.last_used = now
            account.last_error = None
            account.cooldown_until = None
            if account.status != AccountStatus.DISABLED:
                account.status = AccountStatus.ACTIVE
            return dataclasses.replace(account)

        account.error_count += 1
        account.last_error = truncate_error(error) or account.last_error
        if outcome == Outcome.FATAL:
            return dataclasses.replace(account)

        account.consecutive_failures += 1
        backoff = self._policy.backoff(outcome, account.consecutive_failures)
        if backoff is not None:
            account.cooldown_until = now + backoff
        if account.status != AccountStatus.DISABLED:
            account.status = (
                AccountStatus.ERROR if outcome == Outcome.AUTH else AccountStatus.COOLDOWN
            )
        return dataclasses.replace(account)

    def mark_refresh_failed(self, account_id: str, error: str) -> None:
        account = self._accounts.get(account_id)
        if account is None or account.status == AccountStatus.DISABLED:
            return
        account.status = AccountStatus.ERROR
        account.last_error = truncate_error(error)

    def mark_refresh_succeeded(self, account_id: str) -> None:
        account = self._accounts.get(account_id)
        if account is None or account.status != AccountStatus.ERROR:
            return
        account.status = AccountStatus.ACTIVE
        account.last_error = None

    def reset_counters(self) -> None:
        for account in self._accounts.values():
            account.request_count = 0
            account.error_count = 0

    def views(self) -> list[dict[str, Any]]:
        accounts = sorted(
            self._accounts.values(), key=lambda item: item.last_used, reverse=True
        )
        return [account.to_view() for account in accounts]

    def available_count(self, now: float) -> int:
        return sum(1 for account in self._accounts.values() if account.is_eligible(now))

    def first_available_id(self, now: float) -> str | None:
        for account_id in self._order:
            if self._accounts[account_id].is_eligible(now):
                return account_id
        return None
