import asyncio
import time
from typing import Optional, Protocol

import httpx

from spin_bridge.config import Settings, settings as default_settings
from spin_bridge.contracts.chain_contracts import (
    ChainBalance,
    ChainCredits,
    ChainReceipt,
    ChainSpinStatus,
    ChainSpinSubmission,
)
from spin_bridge.errors import ChainUnavailable, TransactionRejected
from spin_bridge.logging_config import get_logger
from spin_bridge.schemas.spin_schemas import CreditBalance, MachineConfig, SpinRequest

logger = get_logger(__name__)


class ChainAdapter(Protocol):
    """
    What the authority needs from the chain. Signing happens behind this interface.
    """

    async def initialize(self) -> None: ...

    async def get_machine_config(self) -> MachineConfig: ...

    async def submit_spin(self, request: SpinRequest, address: str) -> ChainReceipt: ...

    async def wait_for_outcome(self, receipt: ChainReceipt) -> ChainSpinStatus: ...

    async def get_balance(self, address: str) -> int: ...

    async def get_credit_balance(self, address: str) -> CreditBalance: ...

    async def aclose(self) -> None: ...


class HttpChainAdapter:
    def __init__(
        self,
        contract_id: str,
        settings: Settings = default_settings,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.contract_id = contract_id
        self.settings = settings
        self.client = client or httpx.AsyncClient(
            base_url=str(settings.chain_base_url),
            timeout=settings.chain_request_timeout_seconds,
        )
        self.max_retries = settings.max_retries
        self.retry_backoff_seconds = settings.retry_backoff_seconds

    async def _request_with_retry(self, method: str, url: str, json: Optional[dict] = None) -> httpx.Response:
        retries = 0
        backoff = self.retry_backoff_seconds
        while True:
            try:
                response = await self.client.request(method, url, json=json)
            except httpx.RequestError as exc:
                # Surface network/DNS errors as a channel-wide failure.
                raise ChainUnavailable(f"chain request error: {exc}") from exc
            if response.status_code == 429 and retries < self.max_retries:
                retry_after = response.headers.get("Retry-After")
                wait = float(retry_after) if retry_after else backoff
                await asyncio.sleep(wait)
                retries += 1
                backoff *= 2
                continue
            if response.status_code >= 500 and retries < self.max_retries:
                await asyncio.sleep(backoff)
                retries += 1
                backoff *= 2
                continue
            return response

    @staticmethod
    def _json_or_raise(response: httpx.Response) -> dict:
        if response.status_code == 200:
            return response.json()
        if response.status_code == 429 or response.status_code >= 500:
            raise ChainUnavailable(f"chain returned {response.status_code}: {response.text}")
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        raise TransactionRejected(str(detail))

    async def initialize(self) -> None:
        resp = await self._request_with_retry("GET", "/health")
        if resp.status_code != 200:
            raise ChainUnavailable(f"chain health check returned {resp.status_code}")
        logger.info("Chain adapter ready: base_url=%s contract_id=%s", self.client.base_url, self.contract_id)

    async def get_machine_config(self) -> MachineConfig:
        resp = await self._request_with_retry("GET", f"/v1/machines/{self.contract_id}/config")
        return MachineConfig.model_validate(self._json_or_raise(resp))

    async def submit_spin(self, request: SpinRequest, address: str) -> ChainReceipt:
        submission = ChainSpinSubmission.from_spin_request(request, address)
        resp = await self._request_with_retry(
            "POST",
            f"/v1/machines/{self.contract_id}/spins",
            json=submission.model_dump(exclude_none=True),
        )
        receipt = ChainReceipt.model_validate(self._json_or_raise(resp))
        logger.info(
            "Spin transaction accepted: clientId=%s betKey=%s txId=%s claimRound=%s",
            request.clientId,
            receipt.betKey,
            receipt.txId,
            receipt.claimRound,
        )
        return receipt

    async def wait_for_outcome(self, receipt: ChainReceipt) -> ChainSpinStatus:
        deadline = time.monotonic() + self.settings.confirmation_timeout_seconds
        while True:
            resp = await self._request_with_retry("GET", f"/v1/spins/{receipt.betKey}")
            status = ChainSpinStatus.model_validate(self._json_or_raise(resp))
            if status.status == "confirmed":
                return status
            if status.status == "rejected":
                raise TransactionRejected(status.reason or "rejected by network")
            if time.monotonic() >= deadline:
                raise TransactionRejected(f"no confirmation for {receipt.betKey} within {self.settings.confirmation_timeout_seconds}s")
            await asyncio.sleep(self.settings.confirmation_poll_seconds)

    async def get_balance(self, address: str) -> int:
        resp = await self._request_with_retry("GET", f"/v1/accounts/{address}/balance")
        return ChainBalance.model_validate(self._json_or_raise(resp)).balance

    async def get_credit_balance(self, address: str) -> CreditBalance:
        resp = await self._request_with_retry("GET", f"/v1/machines/{self.contract_id}/accounts/{address}/credits")
        credits = ChainCredits.model_validate(self._json_or_raise(resp))
        return CreditBalance(credits=credits.credits, bonusSpins=credits.bonusSpins)

    async def aclose(self) -> None:
        await self.client.aclose()
