from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import requests
from web3 import Web3

from supplier_pay.config import Settings
from supplier_pay.models import ExecutionEnv
from supplier_pay.services.ledger_client import (
    LedgerClient,
    LedgerConnectionError,
    LedgerRevertError,
    LedgerTimeoutError,
    build_ledger_client,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

ZERO_REF = '0x' + '00' * 32
ALLOWED_ENVS = {ExecutionEnv.TESTING}
TRANSIENT_HTTP_STATUSES = {429, 503}
# Matched case-insensitively against the most specific error message.
TRANSIENT_ERROR_SIGNATURES = (
    'missing response for request',
    'timeout',
    'timed out',
    'ETIMEDOUT',
    'ECONNRESET',
    'connection reset',
    '503',
    '429',
)

_BYTES32_RE = re.compile(r'^0x[0-9a-fA-F]{64}$')
_INTEGER_RE = re.compile(r'^-?[0-9]+$')


class ExecutionRejected(ValueError):
    pass


class ExecutionFailed(RuntimeError):
    def __init__(self, message: str, *, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.tx_hash = tx_hash


@dataclass(frozen=True)
class ExecutionRequest:
    env: ExecutionEnv
    owner_address: str
    supplier_address: str
    amount: int
    ref: str
    restaurant_id: str


@dataclass(frozen=True)
class ExecutionResult:
    request: ExecutionRequest
    tx_hash: str
    block_number: int

    def to_dict(self) -> dict:
        return {
            'ok': True,
            'env': self.request.env.value,
            'ownerAddress': self.request.owner_address,
            'supplierAddress': self.request.supplier_address,
            'amount': str(self.request.amount),
            'ref': self.request.ref,
            'restaurantId': self.request.restaurant_id,
            'txHash': self.tx_hash,
            'blockNumber': self.block_number,
        }


def error_message(exc: BaseException) -> str:
    for attr in ('short_message', 'reason', 'message'):
        value = getattr(exc, attr, None)
        if isinstance(value, str) and value:
            return value
    return str(exc) or exc.__class__.__name__


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, LedgerRevertError):
        return False
    if isinstance(exc, (LedgerTimeoutError, LedgerConnectionError, requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(exc, (TimeoutError, ConnectionResetError)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        if exc.response.status_code in TRANSIENT_HTTP_STATUSES:
            return True
    message = error_message(exc).lower()
    return any(signature.lower() in message for signature in TRANSIENT_ERROR_SIGNATURES)


def call_with_retry(
    fn: Callable[[float], T],
    *,
    label: str,
    attempts: int,
    timeout: float,
    backoff_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``fn(timeout)`` up to ``attempts`` times.

    Only transient failures are retried, with a linear backoff of
    ``backoff_seconds * attempt``. The last error is re-raised unchanged.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn(timeout)
        except Exception as exc:
            if attempt >= attempts or not is_transient_error(exc):
                raise
            delay = backoff_seconds * attempt
            logger.warning(
                '%s attempt %d/%d failed with transient error: %s; retrying in %.2fs',
                label,
                attempt,
                attempts,
                error_message(exc),
                delay,
            )
            sleep(delay)
    raise ValueError('attempts must be at least 1')


def restaurant_id_from_location(location_id: str) -> str:
    return Web3.to_hex(Web3.keccak(text=location_id))


def parse_token_amount(value: object) -> int:
    if isinstance(value, bool):
        raise ExecutionRejected('Invalid amount')
    if isinstance(value, int):
        amount = value
    elif isinstance(value, float) and value.is_integer():
        amount = int(value)
    elif isinstance(value, str) and _INTEGER_RE.match(value.strip()):
        amount = int(value.strip())
    else:
        raise ExecutionRejected('Invalid amount')
    if amount <= 0:
        raise ExecutionRejected('amount must be > 0')
    return amount


def _bytes32(value: object, field_name: str) -> str:
    if not isinstance(value, str) or not _BYTES32_RE.match(value):
        raise ExecutionRejected(f'Invalid {field_name} (expected 0x-prefixed 32-byte hex)')
    return value


def validate_execution_request(
    *,
    env: object,
    owner_address: object,
    supplier_address: object,
    amount: object,
    ref: object = None,
    restaurant_id: object = None,
    location_id: object = None,
) -> ExecutionRequest:
    # Only an omitted env defaults to testing; any other non-matching value is refused.
    resolved_env = ExecutionEnv.TESTING.value if env is None else env
    if not isinstance(resolved_env, str) or resolved_env not in {allowed.value for allowed in ALLOWED_ENVS}:
        raise ExecutionRejected(f'Execution disabled unless env=testing (got env={resolved_env})')

    if not isinstance(owner_address, str) or not Web3.is_checksum_address(owner_address):
        raise ExecutionRejected('Invalid ownerAddress')
    if not isinstance(supplier_address, str) or not Web3.is_checksum_address(supplier_address):
        raise ExecutionRejected('Invalid supplierAddress')

    token_amount = parse_token_amount(amount)
    resolved_ref = ZERO_REF if ref in (None, '') else _bytes32(ref, 'ref')

    if restaurant_id not in (None, ''):
        resolved_restaurant_id = _bytes32(restaurant_id, 'restaurantId')
    elif isinstance(location_id, str) and location_id.strip():
        resolved_restaurant_id = restaurant_id_from_location(location_id)
    else:
        raise ExecutionRejected('Missing restaurantId or locationId')

    return ExecutionRequest(
        env=ExecutionEnv(resolved_env),
        owner_address=owner_address,
        supplier_address=supplier_address,
        amount=token_amount,
        ref=resolved_ref,
        restaurant_id=resolved_restaurant_id,
    )


class ExecutionGateway:
    def __init__(
        self,
        client_factory: Callable[[ExecutionEnv], LedgerClient],
        *,
        submit_timeout: float = 15,
        confirm_timeout: float = 60,
        max_attempts: int = 2,
        backoff_seconds: float = 0.3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client_factory = client_factory
        self.submit_timeout = submit_timeout
        self.confirm_timeout = confirm_timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    @classmethod
    def from_settings(cls, config: Settings) -> ExecutionGateway:
        return cls(
            lambda env: build_ledger_client(env, config),
            submit_timeout=config.submit_timeout_seconds,
            confirm_timeout=config.confirm_timeout_seconds,
            max_attempts=config.submit_max_attempts,
            backoff_seconds=config.retry_backoff_ms / 1000,
        )

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        try:
            client = self.client_factory(request.env)
            tx_hash = call_with_retry(
                lambda timeout: client.pay_order_for(
                    request.owner_address,
                    request.supplier_address,
                    request.amount,
                    request.ref,
                    request.restaurant_id,
                    timeout=timeout,
                ),
                label='payOrderFor()',
                attempts=self.max_attempts,
                timeout=self.submit_timeout,
                backoff_seconds=self.backoff_seconds,
                sleep=self.sleep,
            )
        except Exception as exc:
            logger.error(
                'payOrderFor failed for supplier %s amount %s: %s',
                request.supplier_address,
                request.amount,
                error_message(exc),
            )
            raise ExecutionFailed(error_message(exc)) from exc

        try:
            receipt = client.wait_for_confirmation(tx_hash, timeout=self.confirm_timeout)
        except Exception as exc:
            # The payment may still land; status has to be checked by tx hash.
            logger.warning('Transaction %s submitted but not confirmed: %s', tx_hash, error_message(exc))
            raise ExecutionFailed(error_message(exc), tx_hash=tx_hash) from exc

        logger.info(
            'Paid supplier %s amount %s in tx %s (block %s)',
            request.supplier_address,
            request.amount,
            receipt.tx_hash,
            receipt.block_number,
        )
        return ExecutionResult(request=request, tx_hash=receipt.tx_hash, block_number=receipt.block_number)
