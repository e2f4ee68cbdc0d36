from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from web3 import Web3

from supplier_pay.services.execution_service import restaurant_id_from_location
from supplier_pay.services.ledger_client import TREASURY_HUB_ABI
from supplier_pay.services.payment_intent_service import Catalog, PaymentIntent, round_cents


@dataclass(frozen=True)
class PaymentCall:
    supplier_id: str
    supplier_payout_address: str
    amount_usd: Decimal
    amount_token: int
    to: str
    data: str

    def to_dict(self) -> dict:
        return {
            'supplierId': self.supplier_id,
            'supplierPayoutAddress': self.supplier_payout_address,
            'amountUsd': float(self.amount_usd),
            'amountToken': str(self.amount_token),
            'to': self.to,
            'data': self.data,
        }


@dataclass(frozen=True)
class PaymentCallBundle:
    ref: str
    restaurant_id: str
    calls: tuple[PaymentCall, ...]


def usd_to_token_units(amount_usd: Decimal, decimals: int = 18) -> int:
    # The payment token is pegged 1:1 to USD.
    return int(round_cents(amount_usd).scaleb(decimals))


def intent_ref(intent_id: str) -> str:
    return Web3.to_hex(Web3.keccak(text=intent_id))


def build_payment_calls(
    intent: PaymentIntent,
    catalog: Catalog,
    *,
    owner_address: str,
    location_id: str,
    hub_address: str,
    decimals: int = 18,
) -> PaymentCallBundle:
    """Encode one treasury-hub ``payOrderFor`` call per transfer of ``intent``."""
    hub = Web3.to_checksum_address(hub_address)
    contract = Web3().eth.contract(address=hub, abi=TREASURY_HUB_ABI)
    ref = intent_ref(intent.intent_id)
    restaurant_id = restaurant_id_from_location(location_id)

    calls: list[PaymentCall] = []
    for transfer in intent.transfers:
        supplier = catalog.suppliers.get(transfer.supplier_id)
        payout = supplier.payout_address if supplier else None
        if not isinstance(payout, str) or not Web3.is_checksum_address(payout):
            raise ValueError(f'Missing/invalid payoutAddress for supplierId={transfer.supplier_id}')

        amount_token = usd_to_token_units(transfer.amount_usd, decimals)
        data = contract.encode_abi(
            'payOrderFor',
            args=[
                owner_address,
                payout,
                amount_token,
                Web3.to_bytes(hexstr=ref),
                Web3.to_bytes(hexstr=restaurant_id),
            ],
        )
        calls.append(
            PaymentCall(
                supplier_id=transfer.supplier_id,
                supplier_payout_address=payout,
                amount_usd=transfer.amount_usd,
                amount_token=amount_token,
                to=hub,
                data=data,
            )
        )

    return PaymentCallBundle(ref=ref, restaurant_id=restaurant_id, calls=tuple(calls))
