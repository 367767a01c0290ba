"""
Outbound payment transports.

A transport exposes pay(recipient, amount, idempotency_key). The
DeduplicatingTransport wrapper records every key in payment_attempts
before delegating, so a key is submitted to the ledger at most once.
"""

import asyncio
import hashlib
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from web3 import AsyncWeb3, Web3

from app.core.config import settings, ChainConfig
from app.core.database import dialect_insert, get_async_session
from app.core.exceptions import ConfigurationError, SeasonRewardsException, TransportError
from app.models.distribution import PaymentAttempt, PaymentStatus
from app.utils.validation import EvmValidator


logger = structlog.get_logger(__name__)


@dataclass
class PaymentResult:
    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None
    deduplicated: bool = False


class PaymentTransport(ABC):
    """Idempotent payment capability."""

    @abstractmethod
    async def pay(self, recipient: str, amount: int, idempotency_key: str) -> PaymentResult:
        ...


class TokenTransferTransport(PaymentTransport):
    """Pays rewards as ERC-20 transfers signed by the payer account."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        token_address: Optional[str] = None,
        private_key: Optional[str] = None,
        receipt_timeout: Optional[float] = None
    ):
        self.logger = logger.bind(service="token_transfer_transport")

        token_address = token_address or settings.reward_token_address
        private_key = private_key or settings.payer_private_key
        if not token_address or not private_key:
            raise ConfigurationError("Token payments need REWARD_TOKEN_ADDRESS and PAYER_PRIVATE_KEY")

        self.receipt_timeout = receipt_timeout or settings.payment_timeout
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url or settings.chain_rpc_url))
        self.account = self.w3.eth.account.from_key(private_key)
        self.token = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token_address),
            abi=ChainConfig.ERC20_TRANSFER_ABI
        )

        self._nonce: Optional[int] = None
        self._chain_id: Optional[int] = None
        self._lock = asyncio.Lock()

        self.logger.info("Token transfer transport initialized", payer=self.account.address)

    async def _next_nonce(self) -> int:
        if self._nonce is None:
            self._nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
        nonce = self._nonce
        self._nonce += 1
        return nonce

    async def pay(self, recipient: str, amount: int, idempotency_key: str) -> PaymentResult:
        to_address = EvmValidator.to_checksum(recipient)

        try:
            async with self._lock:
                if self._chain_id is None:
                    self._chain_id = await self.w3.eth.chain_id

                tx = await self.token.functions.transfer(to_address, amount).build_transaction({
                    "from": self.account.address,
                    "nonce": await self._next_nonce(),
                    "gas": settings.payment_gas_limit,
                    "chainId": self._chain_id,
                })
                signed = self.account.sign_transaction(tx)
                tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)

            reference = Web3.to_hex(tx_hash)
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)

        except Exception as e:
            # The nonce may or may not have been consumed; re-read it next time
            self._nonce = None
            raise TransportError(
                f"Token transfer failed: {e}",
                {"recipient": recipient, "idempotency_key": idempotency_key}
            )

        if receipt["status"] != 1:
            return PaymentResult(success=False, reference=reference, error="Transfer reverted")

        self.logger.info(
            "Token transfer confirmed",
            recipient=recipient,
            amount=str(amount),
            tx_hash=reference
        )
        return PaymentResult(success=True, reference=reference)


class SimulatedPaymentTransport(PaymentTransport):
    """Pays nobody. Returns deterministic fake references and fails at a configured rate."""

    def __init__(self, failure_rate: Optional[float] = None, seed: Optional[int] = None):
        self.failure_rate = settings.simulated_failure_rate if failure_rate is None else failure_rate
        self._random = random.Random(seed)

    async def pay(self, recipient: str, amount: int, idempotency_key: str) -> PaymentResult:
        await asyncio.sleep(0)

        if self._random.random() < self.failure_rate:
            return PaymentResult(success=False, error="Simulated network failure")

        reference = "0x" + hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()
        return PaymentResult(success=True, reference=reference)


class DeduplicatingTransport(PaymentTransport):
    """
    Enforces one submission per idempotency key.

    The attempt row is committed as ``submitted`` before the inner transport
    is called. A key that already succeeded returns its stored reference;
    a key left ``submitted`` or ``failed`` by an earlier run has an unknown
    or failed outcome and is reported as a failure without resubmitting.
    """

    def __init__(self, inner: PaymentTransport, session_factory: Callable = get_async_session):
        self.logger = logger.bind(service="deduplicating_transport")
        self.inner = inner
        self.session_factory = session_factory

    @staticmethod
    def _parse_key(idempotency_key: str) -> tuple:
        distribution_id, batch_index, _ = idempotency_key.split(":", 2)
        return distribution_id, int(batch_index)

    async def _claim(self, recipient: str, amount: int, idempotency_key: str) -> Optional[PaymentAttempt]:
        """Insert the attempt row. Returns the existing row if the key was already claimed."""
        distribution_id, batch_index = self._parse_key(idempotency_key)

        async with self.session_factory() as session:
            stmt = dialect_insert(session, PaymentAttempt).values(
                idempotency_key=idempotency_key,
                distribution_id=distribution_id,
                batch_index=batch_index,
                recipient=recipient,
                amount=amount,
                status=PaymentStatus.SUBMITTED
            ).on_conflict_do_nothing(index_elements=["idempotency_key"])
            result = await session.execute(stmt)

            if result.rowcount == 1:
                return None
            return await session.get(PaymentAttempt, idempotency_key)

    async def _record(self, idempotency_key: str, result: PaymentResult) -> None:
        async with self.session_factory() as session:
            attempt = await session.get(PaymentAttempt, idempotency_key)
            attempt.status = PaymentStatus.SUCCEEDED if result.success else PaymentStatus.FAILED
            attempt.reference = result.reference
            attempt.error = result.error

    async def pay(self, recipient: str, amount: int, idempotency_key: str) -> PaymentResult:
        existing = await self._claim(recipient, amount, idempotency_key)

        if existing is not None:
            if existing.status == PaymentStatus.SUCCEEDED:
                self.logger.info("Payment already succeeded, not resubmitting", idempotency_key=idempotency_key)
                return PaymentResult(success=True, reference=existing.reference, deduplicated=True)

            self.logger.warning(
                "Payment previously attempted, not resubmitting",
                idempotency_key=idempotency_key,
                status=existing.status.value
            )
            return PaymentResult(
                success=False,
                reference=existing.reference,
                error=f"Previous attempt is {existing.status.value}; manual review required",
                deduplicated=True
            )

        try:
            result = await self.inner.pay(recipient, amount, idempotency_key)
        except SeasonRewardsException as e:
            result = PaymentResult(success=False, error=e.message)

        await self._record(idempotency_key, result)
        return result


def create_payment_transport(session_factory: Callable = get_async_session) -> PaymentTransport:
    """Build the configured transport wrapped in deduplication."""
    if settings.payment_mode == "token":
        inner = TokenTransferTransport()
    else:
        inner = SimulatedPaymentTransport()
    return DeduplicatingTransport(inner, session_factory)
