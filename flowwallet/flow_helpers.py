"""Helpers for talking to the Flow chain."""

import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

from .errors import RequestError

HEX_PREFIX = "0x"
ADDRESS_LENGTH = 8
ID_LENGTH = 32


class ChainId(str, Enum):
    MAINNET = "flow-mainnet"
    TESTNET = "flow-testnet"
    EMULATOR = "flow-emulator"


class TransactionStatus(Enum):
    UNKNOWN = 0
    PENDING = 1
    FINALIZED = 2
    EXECUTED = 3
    SEALED = 4
    EXPIRED = 5


@dataclass
class TransactionResult:
    status: TransactionStatus
    error: Optional[Exception] = None
    events: list = field(default_factory=list)


@dataclass
class BlockHeader:
    id: bytes
    height: int


class TransactionError(Exception):
    """A transaction failed; the result is kept when there is one."""

    def __init__(self, message: str, result: Optional[TransactionResult] = None):
        super().__init__(message)
        self.result = result


class FlowClient(Protocol):
    def execute_script_at_latest_block(self, script: bytes, arguments: Sequence[Any]) -> Any: ...
    def get_account(self, address: bytes) -> Any: ...
    def get_account_at_latest_block(self, address: bytes) -> Any: ...
    def get_transaction(self, tx_id: bytes) -> Any: ...
    def get_transaction_result(self, tx_id: bytes) -> TransactionResult: ...
    def get_latest_block_header(self, is_sealed: bool) -> BlockHeader: ...
    def get_events_for_height_range(self, event_type: str, start: int, end: int) -> list: ...
    def send_transaction(self, tx: Any) -> None: ...


class _Backoff:
    def __init__(self, minimum=0.1, maximum=1.0, factor=5.0):
        self.minimum, self.maximum, self.factor = minimum, maximum, factor
        self.attempt = 0

    def duration(self) -> float:
        dur = self.minimum * self.factor ** self.attempt
        self.attempt += 1
        dur = self.minimum + random.random() * (dur - self.minimum)
        return min(max(dur, self.minimum), self.maximum)


def latest_block_id(client: FlowClient) -> bytes:
    """Return the id of the latest (unsealed) block."""
    return client.get_latest_block_header(False).id


def wait_for_seal(client: FlowClient, tx_id: bytes, timeout: float) -> TransactionResult:
    """Poll until the transaction is sealed; raise if it fails, expires or times out."""
    backoff = _Backoff()
    deadline = time.monotonic() + timeout if timeout and timeout > 0 else None
    while True:
        result = client.get_transaction_result(tx_id)
        if result.error is not None:
            raise TransactionError(str(result.error), result) from result.error
        if result.status is TransactionStatus.EXPIRED:
            raise TransactionError("transaction expired", result)
        if result.status is TransactionStatus.SEALED:
            return result
        pause = backoff.duration()
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("context deadline exceeded")
            pause = min(pause, remaining)
        time.sleep(pause)


def send_and_wait(client: FlowClient, tx: Any, timeout: float) -> TransactionResult:
    """Send a transaction and wait for it to be sealed."""
    client.send_transaction(tx)
    return wait_for_seal(client, tx.id, timeout)


def hex_string(value: str) -> str:
    return value if value.startswith(HEX_PREFIX) else HEX_PREFIX + value


def _hex_to_address(value: str) -> bytes:
    digits = value[2:] if value.startswith(HEX_PREFIX) else value
    if len(digits) % 2:
        digits = "0" + digits
    try:
        raw = bytes.fromhex(digits)
    except ValueError:
        raw = b""
    return raw[-ADDRESS_LENGTH:].rjust(ADDRESS_LENGTH, b"\0")


def format_address(address: bytes) -> str:
    return hex_string(address.hex())


def is_valid_address(address: bytes, chain_id: ChainId) -> bool:
    """An address is valid when it is well formed and not empty."""
    ChainId(chain_id)
    return len(address) == ADDRESS_LENGTH and any(address)


def validate_address(address: str, chain_id: ChainId) -> str:
    """Validate an address for a chain and return it formatted."""
    flow_address = _hex_to_address(address)
    if not is_valid_address(flow_address, chain_id):
        raise RequestError(400, f'not a valid address: "{address}"')
    return format_address(flow_address)


def validate_transaction_id(tx_id: str) -> None:
    """Raise RequestError unless tx_id is a canonical transaction id."""
    invalid = RequestError(400, f'not a valid transaction id: "{tx_id}"')
    try:
        raw = bytes.fromhex(tx_id) if len(tx_id) % 2 == 0 else None
    except ValueError:
        raw = None
    if raw is None:
        raise invalid
    canonical = raw[:ID_LENGTH].ljust(ID_LENGTH, b"\0").hex()
    if tx_id != canonical:
        raise invalid