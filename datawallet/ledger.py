"""Ledger attestation: simulated and JSON-RPC backed ledgers."""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import time
import uuid
from typing import Any

import httpx
import structlog

from .config import LedgerConfig, LedgerMode, RetryConfig
from .errors import AttestationError, LedgerSchemaError
from .interfaces import Ledger
from .ledger_schema import ContractFunction, ContractSchema
from .models import LedgerAttestationRecord, TransactionStatus
from .registry import IDENTITY_RE
from .retry import ExternalCall

logger = structlog.get_logger()


def wallet_id_for(task_id: str) -> bytes:
    """bytes32 key under which a task's locator is recorded."""
    return hashlib.sha256(task_id.encode("utf-8")).digest()


class SimulatedLedger(Ledger):
    """Stands in for the ledger when real transactions are disabled.

    Attestations complete after a fixed delay with a synthetic transaction
    reference; queries answer from configuration.
    """

    def __init__(self, config: LedgerConfig) -> None:
        self._config = config
        self.network = config.network
        self._transactions: set[str] = set()

    async def attest(self, task_id: str, locator: str) -> str:
        await asyncio.sleep(self._config.simulated_delay_seconds)
        tx_ref = "0x" + uuid.uuid4().hex + uuid.uuid4().hex
        self._transactions.add(tx_ref)
        logger.info("attestation_simulated", task_id=task_id, locator=locator, tx_ref=tx_ref)
        return tx_ref

    async def is_registered(self, identity: str) -> bool:
        return bool(IDENTITY_RE.match(identity))

    async def get_balance(self, identity: str) -> int:
        return self._config.simulated_balance

    async def get_transaction_status(self, tx_ref: str) -> TransactionStatus:
        if tx_ref not in self._transactions:
            raise AttestationError(f"unknown transaction {tx_ref}")
        return TransactionStatus.CONFIRMED


class JsonRpcLedger(Ledger):
    """Talks to an Ethereum-compatible node over JSON-RPC.

    Transactions are sent with ``eth_sendTransaction`` from an account the
    node manages.  Contract functions come from a :class:`ContractSchema`
    whose required functions are checked at construction time.
    """

    def __init__(self, config: LedgerConfig, schema: ContractSchema) -> None:
        if not (config.rpc_url and config.contract_address and config.sender_address):
            raise LedgerSchemaError("real ledger mode requires rpc_url, contract_address and sender_address")
        self._config = config
        self.network = config.network
        self._rpc_url = config.rpc_url
        self._contract = config.contract_address
        self._sender = config.sender_address
        self._attest_fn = schema.require(
            config.attest_function, inputs=["bytes32", "string"], read_only=False
        )
        self._registered_fn = schema.require(
            config.registered_function, inputs=["address"], outputs=["bool"], read_only=True
        )
        self._balance_fn = schema.require(
            config.balance_function, inputs=["address"], outputs=["uint256"], read_only=True
        )
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._config.timeout_seconds))
        logger.info("ledger_client_started", network=self.network, contract=self._contract)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("ledger_client_stopped")

    # ------------------------------------------------------------------
    # JSON-RPC plumbing
    # ------------------------------------------------------------------

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        if self._client is None:
            raise AssertionError("Ledger client not started")
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post(self._rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AttestationError(f"{method} failed: {exc}") from exc
        if body.get("error"):
            error = body["error"]
            raise AttestationError(f"{method} failed: {error.get('message', error)}")
        return body.get("result")

    async def _call(self, fn: ContractFunction, *args: Any) -> list[Any]:
        data = fn.encode_call(*args)
        result = await self._rpc("eth_call", [{"to": self._contract, "data": data}, "latest"])
        if not isinstance(result, str):
            raise AttestationError(f"{fn.name} returned no data")
        return fn.decode_result(result)

    async def _receipt(self, tx_ref: str) -> dict[str, Any] | None:
        return await self._rpc("eth_getTransactionReceipt", [tx_ref])

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def attest(self, task_id: str, locator: str) -> str:
        tx: dict[str, Any] = {
            "from": self._sender,
            "to": self._contract,
            "data": self._attest_fn.encode_call(wallet_id_for(task_id), locator),
        }
        estimate = int(await self._rpc("eth_estimateGas", [tx]), 16)
        tx["gas"] = hex(estimate * (100 + self._config.gas_buffer_percent) // 100)

        tx_ref = await self._rpc("eth_sendTransaction", [tx])
        logger.info("attestation_submitted", task_id=task_id, tx_ref=tx_ref, gas=tx["gas"])

        receipt = await self._wait_for_receipt(tx_ref)
        if receipt.get("status") != "0x1":
            raise AttestationError(f"transaction {tx_ref} reverted")
        logger.info(
            "attestation_confirmed",
            task_id=task_id,
            tx_ref=tx_ref,
            block=receipt.get("blockNumber"),
        )
        return tx_ref

    async def _wait_for_receipt(self, tx_ref: str) -> dict[str, Any]:
        deadline = time.monotonic() + self._config.confirmation_timeout_seconds
        while True:
            receipt = await self._receipt(tx_ref)
            if receipt is not None:
                return receipt
            if time.monotonic() >= deadline:
                raise AttestationError(
                    f"transaction {tx_ref} not confirmed within "
                    f"{self._config.confirmation_timeout_seconds}s"
                )
            await asyncio.sleep(self._config.confirmation_poll_seconds)

    async def is_registered(self, identity: str) -> bool:
        (registered,) = await self._call(self._registered_fn, identity)
        return registered

    async def get_balance(self, identity: str) -> int:
        (balance,) = await self._call(self._balance_fn, identity)
        return balance

    async def get_transaction_status(self, tx_ref: str) -> TransactionStatus:
        receipt = await self._receipt(tx_ref)
        if receipt is None:
            return TransactionStatus.PENDING
        return TransactionStatus.CONFIRMED if receipt.get("status") == "0x1" else TransactionStatus.FAILED

    async def test_connection(self) -> bool:
        try:
            chain_id = int(await self._rpc("eth_chainId", []), 16)
        except AttestationError as exc:
            logger.warning("ledger_connection_failed", error=str(exc))
            return False
        if chain_id != self._config.chain_id:
            logger.warning("ledger_chain_mismatch", expected=self._config.chain_id, actual=chain_id)
            return False
        return True


def build_ledger(config: LedgerConfig) -> Ledger:
    """Create the ledger for the configured mode, validating the contract schema."""
    if config.mode == LedgerMode.REAL:
        if config.schema_path is None:
            raise LedgerSchemaError("real ledger mode requires a contract schema path")
        return JsonRpcLedger(config, ContractSchema.load(config.schema_path))
    return SimulatedLedger(config)


class LedgerAttestor:
    """Ledger calls behind retry and circuit breaking.

    Attestations and queries retry on :class:`AttestationError` and use
    separate circuits.
    """

    def __init__(self, ledger: Ledger, retry: RetryConfig) -> None:
        self._ledger = ledger
        self._attest_call = ExternalCall("ledger.attest", retry, error=AttestationError)
        self._query_call = ExternalCall("ledger.query", retry, error=AttestationError)

    @property
    def network(self) -> str:
        return self._ledger.network

    async def attest(self, task_id: str, locator: str) -> LedgerAttestationRecord:
        tx_ref = await self._attest_call(self._ledger.attest, task_id, locator)
        return LedgerAttestationRecord(
            task_id=task_id,
            locator=locator,
            tx_ref=tx_ref,
            network=self._ledger.network,
            simulated=isinstance(self._ledger, SimulatedLedger),
        )

    async def is_registered(self, identity: str) -> bool:
        return await self._query_call(self._ledger.is_registered, identity)

    async def get_balance(self, identity: str) -> int:
        return await self._query_call(self._ledger.get_balance, identity)

    async def get_transaction_status(self, tx_ref: str) -> TransactionStatus:
        return await self._query_call(self._ledger.get_transaction_status, tx_ref)

    async def test_connection(self) -> bool:
        return await self._ledger.test_connection()
