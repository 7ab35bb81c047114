"""
Wallet / ledger adapter.

Only the debit/credit contract of the external wallet service is used. Every
call carries an idempotency key so a retried cancellation never moves money
twice.
"""
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

import httpx

from dispatch_engine.config import Settings

logger = logging.getLogger(__name__)


class WalletError(Exception):
    pass


class WalletOutcome(str, Enum):
    ok = "ok"
    insufficient_funds = "insufficient_funds"


@dataclass(frozen=True)
class WalletResult:
    outcome: WalletOutcome
    reference: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is WalletOutcome.ok


class HttpWalletClient:
    """
    Talks to the wallet service with up to 3 attempts (exponential backoff)
    on transport errors and 5xx responses. A 402 on debit means the balance is
    too low; that is an answer, not a failure, and is never retried.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None, max_attempts: int = 3):
        self.settings = settings
        self.max_attempts = max_attempts
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.wallet_base_url,
                timeout=self.settings.collaborator_timeout_seconds,
                headers={"Authorization": f"Bearer {self.settings.collaborator_api_key}"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def debit(self, user_id: str, amount: Decimal, idempotency_key: str) -> WalletResult:
        return await self._post("debit", user_id, amount, idempotency_key)

    async def credit(self, user_id: str, amount: Decimal, idempotency_key: str) -> WalletResult:
        return await self._post("credit", user_id, amount, idempotency_key)

    async def _post(self, operation: str, user_id: str, amount: Decimal, idempotency_key: str) -> WalletResult:
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = await self._http().post(
                    f"/v1/wallets/{user_id}/{operation}",
                    headers={"Idempotency-Key": idempotency_key},
                    json={"amount": str(amount), "currency": self.settings.currency},
                )
            except httpx.HTTPError as exc:
                error = WalletError(f"wallet {operation} transport error: {exc}")
            else:
                if resp.status_code == 402 and operation == "debit":
                    logger.info("Wallet debit refused (insufficient funds): user=%s amount=%s", user_id, amount)
                    return WalletResult(WalletOutcome.insufficient_funds)
                if 400 <= resp.status_code < 500:
                    # Client errors will not get better on retry.
                    raise WalletError(f"wallet {operation} rejected {resp.status_code}: {resp.text}")
                if resp.status_code < 400:
                    reference = resp.json().get("id")
                    logger.info("Wallet %s ok: user=%s amount=%s ref=%s", operation, user_id, amount, reference)
                    return WalletResult(WalletOutcome.ok, reference)
                error = WalletError(f"wallet {operation} error {resp.status_code}: {resp.text}")

            if attempt == self.max_attempts:
                logger.error("Wallet %s failed after %d attempts: %s", operation, attempt, error)
                raise error
            await asyncio.sleep(0.1 * 2 ** attempt)
        raise WalletError(f"wallet {operation} exhausted retries")
