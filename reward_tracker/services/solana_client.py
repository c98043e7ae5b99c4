"""
Solana RPC client for the stake and reward queries the tracker needs.
Every call goes through exponential backoff on transport failures.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import structlog
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.models import MemcmpOpts
from solders.pubkey import Pubkey
from solders.signature import Signature

from reward_tracker.core.config import SolanaConfig, settings
from reward_tracker.core.exceptions import (
    DataInconsistencyError,
    SolanaRPCError,
    ValidationError,
)
from .backoff import retry_with_backoff


logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class Delegation:
    """Live stake delegation to the validator."""
    pubkey: str
    activation_epoch: int
    deactivation_epoch: float  # math.inf while not deactivating
    staked_amount: int


@dataclass
class InflationReward:
    """Inflation reward credited to one address for one epoch."""
    amount: int
    post_balance: int
    effective_slot: int
    epoch: int
    commission: Optional[int] = None


@dataclass
class StakeTransactionInfo:
    """The parts of a transaction needed to record a stake."""
    signature: str
    block_time: Optional[int]
    fee: int
    account_keys: List[str]


def validate_pubkey(value: str) -> Pubkey:
    """Parse ``value`` as a base58 public key."""
    try:
        return Pubkey.from_string(value)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Invalid public key: {value}", {"pubkey": value}) from e


class SolanaClient:
    """
    Async Solana RPC client.

    Provides the queries used by the jobs:
    - current epoch
    - stake accounts delegated to a vote account
    - inflation rewards per epoch
    - block times, signatures and transactions
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        commitment: Optional[str] = None,
        timeout: Optional[int] = None,
        initial_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        sleep=asyncio.sleep,
    ):
        rpc_config = SolanaConfig.get_rpc_config()
        self.commitment = Commitment(commitment or rpc_config["commitment"])
        self.client = AsyncClient(
            endpoint=endpoint or rpc_config["endpoint"],
            commitment=self.commitment,
            timeout=timeout or rpc_config["timeout"]
        )
        self.stake_program_id = Pubkey.from_string(SolanaConfig.STAKE_PROGRAM_ID)
        self.initial_delay = settings.retry_initial_delay if initial_delay is None else initial_delay
        self.max_delay = settings.retry_max_delay if max_delay is None else max_delay
        self._sleep = sleep
        self.logger = logger.bind(service="solana_client")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the RPC client connection."""
        await self.client.close()

    async def _call(self, method: str, request: Callable[[], Awaitable[T]]) -> T:
        """Run one RPC request, retrying transport failures only."""
        try:
            return await retry_with_backoff(
                request,
                description=method,
                retry_on=(SolanaRpcException,),
                initial_delay=self.initial_delay,
                max_delay=self.max_delay,
                sleep=self._sleep,
            )
        except SolanaRpcException as e:
            raise SolanaRPCError(f"{method} failed: {e}", {"method": method}) from e
        except RPCException as e:
            raise SolanaRPCError(f"{method} returned error: {e}", {"method": method}) from e

    async def fetch_latest_epoch(self) -> int:
        """Get the current epoch number."""
        response = await self._call(
            "getEpochInfo",
            lambda: self.client.get_epoch_info(commitment=self.commitment)
        )
        return int(response.value.epoch)

    async def fetch_delegations(self, validator_pub_key: str) -> List[Delegation]:
        """Get every stake account currently delegated to ``validator_pub_key``."""
        validate_pubkey(validator_pub_key)
        filters = [
            SolanaConfig.STAKE_ACCOUNT_SIZE,
            MemcmpOpts(offset=SolanaConfig.STAKE_VOTER_OFFSET, bytes=validator_pub_key),
        ]

        response = await self._call(
            "getProgramAccounts",
            lambda: self.client.get_program_accounts_json_parsed(
                self.stake_program_id,
                commitment=self.commitment,
                filters=filters
            )
        )
        accounts = response.value or []

        delegations = []
        for keyed in accounts:
            try:
                delegations.append(self._parse_delegation(keyed))
            except ValidationError as e:
                self.logger.warning(
                    "Skipping malformed stake account",
                    pubkey=str(keyed.pubkey),
                    error=e.message
                )

        self.logger.info(
            "Fetched delegations",
            validator=validator_pub_key,
            accounts=len(accounts),
            delegations=len(delegations)
        )
        return delegations

    @staticmethod
    def _parse_delegation(keyed: Any) -> Delegation:
        pubkey = str(keyed.pubkey)
        try:
            # Accounts the node could not parse come back as raw bytes
            delegation = keyed.account.data.parsed["info"]["stake"]["delegation"]
            return Delegation(
                pubkey=pubkey,
                activation_epoch=int(delegation["activationEpoch"]),
                deactivation_epoch=SolanaConfig.parse_epoch(delegation["deactivationEpoch"]),
                staked_amount=int(delegation["stake"]),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ValidationError(
                f"Stake account has no delegation: {pubkey}",
                {"pubkey": pubkey}
            ) from e

    async def fetch_inflation_rewards(
        self,
        pubkeys: List[str],
        epoch: int
    ) -> List[Optional[InflationReward]]:
        """Get the inflation rewards of ``pubkeys`` for ``epoch``, aligned with the input."""
        if not pubkeys:
            return []

        addresses = [validate_pubkey(pubkey) for pubkey in pubkeys]
        response = await self._call(
            "getInflationReward",
            lambda: self.client.get_inflation_reward(
                addresses, epoch=epoch, commitment=self.commitment
            )
        )
        result = response.value or []
        if len(result) != len(pubkeys):
            raise DataInconsistencyError(
                "Inflation reward response does not match the requested addresses",
                {"epoch": epoch, "requested": len(pubkeys), "received": len(result)}
            )

        return [
            InflationReward(
                amount=int(entry.amount),
                post_balance=int(entry.post_balance),
                effective_slot=int(entry.effective_slot),
                epoch=int(entry.epoch),
                commission=entry.commission,
            ) if entry else None
            for entry in result
        ]

    async def fetch_block_time(self, slot: int) -> Optional[int]:
        """Get the unix block time of ``slot``, or None if the cluster has none."""
        response = await self._call("getBlockTime", lambda: self.client.get_block_time(slot))
        if response.value is None:
            self.logger.warning("Block time not found", slot=slot)
            return None
        return int(response.value)

    async def get_signatures_for_address(self, address: str, limit: int = 1000) -> List[str]:
        """Get transaction signatures involving ``address``, newest first."""
        account = validate_pubkey(address)
        response = await self._call(
            "getSignaturesForAddress",
            lambda: self.client.get_signatures_for_address(
                account, limit=limit, commitment=self.commitment
            )
        )
        return [str(info.signature) for info in response.value or []]

    async def get_transaction(self, signature: str) -> Optional[StakeTransactionInfo]:
        """Get the block time, fee and account keys of a transaction."""
        response = await self._call(
            "getTransaction",
            lambda: self.client.get_transaction(
                Signature.from_string(signature),
                encoding="json",
                commitment=self.commitment,
                max_supported_transaction_version=0,
            )
        )
        confirmed = response.value
        if confirmed is None:
            return None

        meta = confirmed.transaction.meta
        message = confirmed.transaction.transaction.message
        return StakeTransactionInfo(
            signature=signature,
            block_time=confirmed.block_time,
            fee=int(meta.fee) if meta else 0,
            account_keys=[str(getattr(key, "pubkey", key)) for key in message.account_keys],
        )


# Global client instance
_client: Optional[SolanaClient] = None


async def get_solana_client() -> SolanaClient:
    """Get or create a global Solana client instance."""
    global _client
    if _client is None:
        _client = SolanaClient()
    return _client


async def close_solana_client():
    """Close the global Solana client instance."""
    global _client
    if _client:
        await _client.close()
        _client = None
