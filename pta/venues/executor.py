"""
Web3 On-chain Executor.

Drives the settlement contract with a single relay key:

- collectWithPermit: pull a winner's unit-of-account bid into escrow
- distribute:        send auction tokens to one bidder
- batchDistribute:   send auction tokens to many bidders in one transaction

Every transaction is signed by the relay account, so sends are serialized
behind an asyncio.Lock to keep nonces ordered. Blocking web3 calls run in a
worker thread, and the lock is held until that thread returns even when the
caller has been cancelled.
"""

import asyncio
from typing import Any, List

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from pta.core.config import SettlementConfig
from pta.core.permit import Permit
from pta.crypto import recovery_id_for
from pta.utils.logger import get_logger
from pta.venues.base import AuthorizationError, ExecutionRevertedError, TransferReceipt, VenueError

logger = get_logger("executor")

SETTLEMENT_ABI = [
    {
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "deadline", "type": "uint256"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "collectWithPermit",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "distribute",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "recipients", "type": "address[]"},
            {"name": "amounts", "type": "uint256[]"},
        ],
        "name": "batchDistribute",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

DEFAULT_GAS = 300_000
BATCH_GAS_PER_ENTRY = 60_000


class Web3Executor:
    """
    OnChainExecutor over a deployed settlement contract.

    Args:
        w3: Connected Web3 instance
        contract: Settlement contract bound to SETTLEMENT_ABI
        account: Local relay account (eth_account LocalAccount)
        receipt_timeout: Seconds to wait for a mined receipt; keep it below the
            stage timeouts so a slow block is reported by the executor itself
    """

    def __init__(self, w3: Any, contract: Any, account: Any, receipt_timeout: float = 25.0):
        self.w3 = w3
        self.contract = contract
        self.account = account
        self.receipt_timeout = receipt_timeout
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: SettlementConfig) -> "Web3Executor":
        """Build an executor from rpc_url, executor_contract and relayer_private_key."""
        if not (config.rpc_url and config.executor_contract and config.relayer_private_key):
            raise ValueError("rpc_url, executor_contract and relayer_private_key are required for on-chain execution")
        w3 = Web3(Web3.HTTPProvider(config.rpc_url))
        account = w3.eth.account.from_key(config.relayer_private_key)
        contract = w3.eth.contract(
            address=Web3.to_checksum_address(config.executor_contract),
            abi=SETTLEMENT_ABI,
        )
        logger.info(f"Web3Executor relay {account.address} -> contract {config.executor_contract}")
        # Below both stage timeouts so an unmined transaction surfaces as a VenueError
        stage_timeout = min(config.swap_timeout, config.distribution_timeout)
        receipt_timeout = min(config.receipt_timeout, 0.8 * stage_timeout)
        return cls(w3, contract, account, receipt_timeout=receipt_timeout)

    # =========================================================================
    # OnChainExecutor
    # =========================================================================

    async def collect(self, permit: Permit, amount: int) -> TransferReceipt:
        recovery_id = recovery_id_for(permit.digest(), permit.signature, permit.owner)
        if recovery_id is None:
            raise AuthorizationError("permit signature does not recover to owner")

        call = self.contract.functions.collectWithPermit(
            Web3.to_checksum_address(permit.owner),
            Web3.to_checksum_address(permit.token),
            permit.value,
            permit.deadline,
            27 + recovery_id,
            permit.signature[:32],
            permit.signature[32:],
            amount,
        )
        tx_ref = await self._send(call, DEFAULT_GAS)
        logger.info(f"Collected {amount} from {permit.owner[:10]} (tx {tx_ref[:14]})")
        return TransferReceipt(amount=amount, tx_ref=tx_ref)

    async def distribute(self, bidder: str, auction_token: str, quantity: int) -> str:
        call = self.contract.functions.distribute(
            Web3.to_checksum_address(bidder),
            Web3.to_checksum_address(auction_token),
            quantity,
        )
        return await self._send(call, DEFAULT_GAS)

    async def distribute_batch(self, auction_token: str, bidders: List[str], quantities: List[int]) -> str:
        if len(bidders) != len(quantities):
            raise ValueError("bidders and quantities must have the same length")
        call = self.contract.functions.batchDistribute(
            Web3.to_checksum_address(auction_token),
            [Web3.to_checksum_address(b) for b in bidders],
            list(quantities),
        )
        return await self._send(call, DEFAULT_GAS + BATCH_GAS_PER_ENTRY * len(bidders))

    # =========================================================================
    # Transaction plumbing
    # =========================================================================

    async def _send(self, call: Any, gas: int) -> str:
        # The lock is released by the worker, not the caller: a stage timeout
        # cancels the caller but the thread keeps sending with its nonce.
        await self._lock.acquire()
        worker = asyncio.ensure_future(asyncio.to_thread(self._send_blocking, call, gas))
        worker.add_done_callback(self._release)
        return await asyncio.shield(worker)

    def _release(self, worker: asyncio.Future):
        self._lock.release()
        if not worker.cancelled() and worker.exception() is not None:
            logger.debug(f"Relay send finished with error: {worker.exception()}")

    def _send_blocking(self, call: Any, gas: int) -> str:
        try:
            nonce = self.w3.eth.get_transaction_count(self.account.address, "pending")
            tx = call.build_transaction({
                "from": self.account.address,
                "nonce": nonce,
                "gas": gas,
                "gasPrice": self.w3.eth.gas_price,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except ContractLogicError as e:
            raise ExecutionRevertedError(f"execution reverted: {e}") from e
        except TimeExhausted as e:
            raise VenueError(f"transaction not mined within {self.receipt_timeout}s") from e
        except (Web3Exception, ValueError, ConnectionError, OSError) as e:
            raise VenueError(f"transaction submission failed: {e}") from e

        tx_ref = Web3.to_hex(tx_hash)
        if receipt["status"] != 1:
            raise ExecutionRevertedError(f"transaction {tx_ref} reverted")
        return tx_ref

