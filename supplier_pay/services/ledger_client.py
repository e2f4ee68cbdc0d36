from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from supplier_pay.config import Settings
from supplier_pay.models import ExecutionEnv

logger = logging.getLogger(__name__)

TREASURY_HUB_ABI = [
    {
        'type': 'function',
        'name': 'payOrderFor',
        'stateMutability': 'nonpayable',
        'inputs': [
            {'name': 'owner', 'type': 'address'},
            {'name': 'supplier', 'type': 'address'},
            {'name': 'amount', 'type': 'uint256'},
            {'name': 'ref', 'type': 'bytes32'},
            {'name': 'restaurantId', 'type': 'bytes32'},
        ],
        'outputs': [],
    },
]


class LedgerError(Exception):
    def __init__(self, message: str, *, reason: str | None = None, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.tx_hash = tx_hash


class LedgerTimeoutError(LedgerError):
    pass


class LedgerConnectionError(LedgerError):
    pass


class LedgerRevertError(LedgerError):
    pass


@dataclass(frozen=True)
class LedgerReceipt:
    tx_hash: str
    block_number: int
    status: int


class LedgerClient(Protocol):
    def pay_order_for(
        self,
        owner: str,
        supplier: str,
        amount: int,
        ref: str,
        restaurant_id: str,
        *,
        timeout: float,
    ) -> str: ...

    def wait_for_confirmation(self, tx_hash: str, *, timeout: float) -> LedgerReceipt: ...


class _Deadline:
    def __init__(self, label: str, timeout: float) -> None:
        self.label = label
        self.timeout = timeout
        self.expires_at = time.monotonic() + timeout

    def remaining(self) -> float:
        left = self.expires_at - time.monotonic()
        if left <= 0:
            raise LedgerTimeoutError(f'{self.label} timed out after {int(self.timeout * 1000)}ms')
        return left


class TreasuryHubClient:
    """
    Agent-signed access to the treasury hub contract over JSON-RPC.

    Each JSON-RPC request of an attempt gets its own provider whose timeout is
    the time left on that attempt's deadline, and the provider never retries on
    its own. The transaction is fully specified before signing, so no lookups
    happen behind the deadline's back. Once the raw transaction is broadcast,
    the hash is always returned to the caller.
    """

    def __init__(self, *, rpc_url: str, hub_address: str, private_key: str, poll_latency: float = 1.0) -> None:
        self.rpc_url = rpc_url
        self.hub_address = Web3.to_checksum_address(hub_address)
        self.account = Account.from_key(private_key)
        self.poll_latency = poll_latency

    def _web3(self, timeout: float) -> Web3:
        return Web3(
            Web3.HTTPProvider(self.rpc_url, request_kwargs={'timeout': timeout}, exception_retry_configuration=None)
        )

    def _eth(self, deadline: _Deadline):
        return self._web3(deadline.remaining()).eth

    def pay_order_for(
        self,
        owner: str,
        supplier: str,
        amount: int,
        ref: str,
        restaurant_id: str,
        *,
        timeout: float,
    ) -> str:
        deadline = _Deadline('payOrderFor()', timeout)
        contract = Web3().eth.contract(address=self.hub_address, abi=TREASURY_HUB_ABI)
        call = {
            'from': self.account.address,
            'to': self.hub_address,
            'value': 0,
            'data': contract.encode_abi(
                'payOrderFor',
                args=[owner, supplier, amount, Web3.to_bytes(hexstr=ref), Web3.to_bytes(hexstr=restaurant_id)],
            ),
        }
        try:
            chain_id = self._eth(deadline).chain_id
            nonce = self._eth(deadline).get_transaction_count(self.account.address, 'pending')
            gas = self._eth(deadline).estimate_gas(call)
            gas_price = self._eth(deadline).gas_price
            signed = self.account.sign_transaction(
                {**call, 'chainId': chain_id, 'nonce': nonce, 'gas': gas, 'gasPrice': gas_price}
            )

            tx_hash = self._eth(deadline).send_raw_transaction(signed.raw_transaction)
        except requests.Timeout as exc:
            raise LedgerTimeoutError(f'payOrderFor() request timeout: {exc}') from exc
        except requests.ConnectionError as exc:
            raise LedgerConnectionError(f'payOrderFor() connection error: {exc}') from exc
        except ContractLogicError as exc:
            raise LedgerRevertError(str(exc), reason=getattr(exc, 'message', None)) from exc

        tx_hex = Web3.to_hex(tx_hash)
        logger.info('Broadcast payOrderFor %s (nonce=%s, from=%s)', tx_hex, nonce, self.account.address)
        return tx_hex

    def wait_for_confirmation(self, tx_hash: str, *, timeout: float) -> LedgerReceipt:
        label = f'tx.wait({tx_hash})'
        try:
            receipt = self._web3(timeout).eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=timeout,
                poll_latency=self.poll_latency,
            )
        except TimeExhausted as exc:
            raise LedgerTimeoutError(f'{label} timed out after {int(timeout * 1000)}ms', tx_hash=tx_hash) from exc
        except requests.Timeout as exc:
            raise LedgerTimeoutError(f'{label} request timeout: {exc}', tx_hash=tx_hash) from exc
        except requests.ConnectionError as exc:
            raise LedgerConnectionError(f'{label} connection error: {exc}', tx_hash=tx_hash) from exc

        status = int(receipt['status'])
        if status != 1:
            raise LedgerRevertError(
                f'transaction {tx_hash} reverted (status={status})',
                tx_hash=tx_hash,
            )
        return LedgerReceipt(tx_hash=tx_hash, block_number=int(receipt['blockNumber']), status=status)


def rpc_url_for(env: ExecutionEnv, config: Settings) -> str:
    if env == ExecutionEnv.TESTING:
        if not config.sepolia_rpc_url:
            raise RuntimeError('SEPOLIA_RPC_URL is required')
        return config.sepolia_rpc_url
    if not config.mainnet_rpc_url:
        raise RuntimeError('MAINNET_RPC_URL is required')
    return config.mainnet_rpc_url


def build_ledger_client(env: ExecutionEnv, config: Settings) -> TreasuryHubClient:
    rpc_url = rpc_url_for(env, config)
    if not config.agent_private_key:
        raise RuntimeError('AGENT_PRIVATE_KEY is required')
    if not config.treasury_hub_address:
        raise RuntimeError('TREASURY_HUB_ADDRESS is required')
    return TreasuryHubClient(
        rpc_url=rpc_url,
        hub_address=config.treasury_hub_address,
        private_key=config.agent_private_key,
    )
