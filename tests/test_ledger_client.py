from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest.mock import patch

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from supplier_pay.config import Settings
from supplier_pay.models import ExecutionEnv
from supplier_pay.services.ledger_client import (
    LedgerConnectionError,
    LedgerRevertError,
    LedgerTimeoutError,
    TreasuryHubClient,
    build_ledger_client,
)

# Well-known local development key; holds nothing on any live chain.
AGENT_KEY = '0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80'
HUB = Web3.to_checksum_address('0x90f79bf6eb2c4f870365e785982e1f101e93b906')
OWNER = Web3.to_checksum_address('0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266')
SUPPLIER = Web3.to_checksum_address('0x70997970c51812dc3a010c7d01b50e0d17dc79c8')
REF = '0x' + '00' * 32
RESTAURANT_ID = '0x' + '11' * 32
TX_HASH = '0x' + 'ab' * 32
PAY_ORDER_SELECTOR = Web3.to_hex(Web3.keccak(text='payOrderFor(address,address,uint256,bytes32,bytes32)')[:4])


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeEth:
    """Stands in for ``web3.eth``; each RPC can be made to take ``step_seconds``."""

    def __init__(self, clock: FakeClock | None = None, step_seconds: float = 0.0, errors: dict | None = None) -> None:
        self.clock = clock
        self.step_seconds = step_seconds
        self.errors = errors or {}
        self.calls: list[str] = []
        self.estimated: list[dict] = []
        self.sent: list[bytes] = []

    def _rpc(self, method: str) -> None:
        self.calls.append(method)
        if self.clock is not None:
            self.clock.now += self.step_seconds
        if method in self.errors:
            raise self.errors[method]

    @property
    def chain_id(self) -> int:
        self._rpc('eth_chainId')
        return 11155111

    def get_transaction_count(self, address, block) -> int:
        self._rpc('eth_getTransactionCount')
        return 7

    def estimate_gas(self, tx: dict) -> int:
        self._rpc('eth_estimateGas')
        self.estimated.append(tx)
        return 90_000

    @property
    def gas_price(self) -> int:
        self._rpc('eth_gasPrice')
        return 2_000_000_000

    def send_raw_transaction(self, raw: bytes) -> bytes:
        self._rpc('eth_sendRawTransaction')
        self.sent.append(raw)
        return bytes.fromhex('ab' * 32)


def _fake_web3(eth) -> SimpleNamespace:
    return SimpleNamespace(eth=eth)


class TreasuryHubClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TreasuryHubClient(rpc_url='http://localhost:8545', hub_address=HUB.lower(), private_key=AGENT_KEY)

    def test_hub_address_is_checksummed(self) -> None:
        self.assertEqual(self.client.hub_address, HUB)

    def test_pay_order_for_signs_fully_specified_transaction(self) -> None:
        signed: list[dict] = []
        self.client.account = SimpleNamespace(
            address=OWNER,
            sign_transaction=lambda tx: signed.append(tx) or SimpleNamespace(raw_transaction=b'\x02raw'),
        )
        eth = FakeEth()

        with patch.object(TreasuryHubClient, '_web3', return_value=_fake_web3(eth)):
            tx_hash = self.client.pay_order_for(OWNER, SUPPLIER, 10**18, REF, RESTAURANT_ID, timeout=15)

        self.assertEqual(tx_hash, TX_HASH)
        self.assertEqual(
            eth.calls,
            ['eth_chainId', 'eth_getTransactionCount', 'eth_estimateGas', 'eth_gasPrice', 'eth_sendRawTransaction'],
        )
        self.assertEqual(eth.sent, [b'\x02raw'])
        tx = signed[0]
        self.assertEqual(tx['from'], OWNER)
        self.assertEqual(tx['to'], HUB)
        self.assertEqual((tx['chainId'], tx['nonce'], tx['gas'], tx['gasPrice']), (11155111, 7, 90_000, 2_000_000_000))
        self.assertTrue(tx['data'].startswith(PAY_ORDER_SELECTOR))
        self.assertNotIn('gas', eth.estimated[0])

    def test_signed_transaction_recovers_to_agent(self) -> None:
        eth = FakeEth()

        with patch.object(TreasuryHubClient, '_web3', return_value=_fake_web3(eth)):
            self.client.pay_order_for(OWNER, SUPPLIER, 5, REF, RESTAURANT_ID, timeout=15)

        self.assertEqual(Account.recover_transaction(eth.sent[0]), OWNER)

    def test_each_request_gets_the_time_left_on_the_deadline(self) -> None:
        clock = FakeClock()
        eth = FakeEth(clock=clock, step_seconds=6)

        with patch('supplier_pay.services.ledger_client.time.monotonic', clock):
            with patch.object(TreasuryHubClient, '_web3', return_value=_fake_web3(eth)) as web3_mock:
                with self.assertRaises(LedgerTimeoutError) as ctx:
                    self.client.pay_order_for(OWNER, SUPPLIER, 1, REF, RESTAURANT_ID, timeout=15)

        self.assertEqual([c.args[0] for c in web3_mock.call_args_list], [15, 9, 3])
        self.assertEqual(eth.calls, ['eth_chainId', 'eth_getTransactionCount', 'eth_estimateGas'])
        self.assertEqual(eth.sent, [])
        self.assertEqual(str(ctx.exception), 'payOrderFor() timed out after 15000ms')

    def test_expired_deadline_raises_before_any_request(self) -> None:
        with patch.object(TreasuryHubClient, '_web3') as web3_mock:
            with self.assertRaises(LedgerTimeoutError) as ctx:
                self.client.pay_order_for(OWNER, SUPPLIER, 1, REF, RESTAURANT_ID, timeout=0)
        web3_mock.assert_not_called()
        self.assertIn('timed out after 0ms', str(ctx.exception))

    def test_transport_errors_are_classified(self) -> None:
        timeout_eth = FakeEth(errors={'eth_chainId': requests.ReadTimeout('read timed out')})
        with patch.object(TreasuryHubClient, '_web3', return_value=_fake_web3(timeout_eth)):
            with self.assertRaises(LedgerTimeoutError):
                self.client.pay_order_for(OWNER, SUPPLIER, 1, REF, RESTAURANT_ID, timeout=15)

        refused_eth = FakeEth(errors={'eth_getTransactionCount': requests.ConnectionError('connection refused')})
        with patch.object(TreasuryHubClient, '_web3', return_value=_fake_web3(refused_eth)):
            with self.assertRaises(LedgerConnectionError):
                self.client.pay_order_for(OWNER, SUPPLIER, 1, REF, RESTAURANT_ID, timeout=15)

    def test_revert_during_gas_estimate_is_fatal(self) -> None:
        eth = FakeEth(errors={'eth_estimateGas': ContractLogicError('execution reverted: not agent')})
        with patch.object(TreasuryHubClient, '_web3', return_value=_fake_web3(eth)):
            with self.assertRaises(LedgerRevertError):
                self.client.pay_order_for(OWNER, SUPPLIER, 1, REF, RESTAURANT_ID, timeout=15)
        self.assertEqual(eth.sent, [])

    def test_wait_for_confirmation_returns_receipt(self) -> None:
        waits: list = []

        def wait(tx_hash, timeout, poll_latency):
            waits.append((tx_hash, timeout))
            return {'status': 1, 'blockNumber': 123}

        eth = SimpleNamespace(wait_for_transaction_receipt=wait)
        with patch.object(TreasuryHubClient, '_web3', return_value=_fake_web3(eth)):
            receipt = self.client.wait_for_confirmation(TX_HASH, timeout=60)

        self.assertEqual(waits, [(TX_HASH, 60)])
        self.assertEqual(receipt.block_number, 123)
        self.assertEqual(receipt.tx_hash, TX_HASH)

    def test_wait_for_confirmation_timeout_and_revert(self) -> None:
        def exhausted(tx_hash, timeout, poll_latency):
            raise TimeExhausted('not mined')

        with patch.object(TreasuryHubClient, '_web3', return_value=_fake_web3(SimpleNamespace(wait_for_transaction_receipt=exhausted))):
            with self.assertRaises(LedgerTimeoutError) as ctx:
                self.client.wait_for_confirmation(TX_HASH, timeout=60)
        self.assertEqual(ctx.exception.tx_hash, TX_HASH)
        self.assertIn('timed out after 60000ms', str(ctx.exception))

        reverted = SimpleNamespace(wait_for_transaction_receipt=lambda tx_hash, timeout, poll_latency: {'status': 0, 'blockNumber': 9})
        with patch.object(TreasuryHubClient, '_web3', return_value=_fake_web3(reverted)):
            with self.assertRaises(LedgerRevertError):
                self.client.wait_for_confirmation(TX_HASH, timeout=60)


class BuildLedgerClientTests(unittest.TestCase):
    def test_missing_rpc_url_is_reported(self) -> None:
        config = Settings(sepolia_rpc_url=None, agent_private_key=AGENT_KEY, treasury_hub_address=HUB)
        with self.assertRaisesRegex(RuntimeError, 'SEPOLIA_RPC_URL'):
            build_ledger_client(ExecutionEnv.TESTING, config)

    def test_missing_agent_key_is_reported(self) -> None:
        config = Settings(sepolia_rpc_url='http://localhost:8545', agent_private_key=None, treasury_hub_address=HUB)
        with self.assertRaisesRegex(RuntimeError, 'AGENT_PRIVATE_KEY'):
            build_ledger_client(ExecutionEnv.TESTING, config)

    def test_production_uses_mainnet_url(self) -> None:
        config = Settings(mainnet_rpc_url=None, agent_private_key=AGENT_KEY, treasury_hub_address=HUB)
        with self.assertRaisesRegex(RuntimeError, 'MAINNET_RPC_URL'):
            build_ledger_client(ExecutionEnv.PRODUCTION, config)

    def test_builds_client_for_testing(self) -> None:
        config = Settings(sepolia_rpc_url='http://localhost:8545', agent_private_key=AGENT_KEY, treasury_hub_address=HUB)
        client = build_ledger_client(ExecutionEnv.TESTING, config)
        self.assertEqual(client.rpc_url, 'http://localhost:8545')
        self.assertEqual(client.hub_address, HUB)
        self.assertEqual(client.account.address, OWNER)


if __name__ == '__main__':
    unittest.main()
