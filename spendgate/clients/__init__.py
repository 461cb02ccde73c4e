"""
Outbound collaborators: execution engine, signer, settlement network.

Services depend on these Protocols; production wiring uses the httpx
clients in this package, tests substitute in-memory fakes.
"""

from dataclasses import dataclass
from typing import Protocol

from spendgate.clients.execution_engine import BuiltTransaction, HttpExecutionEngine
from spendgate.clients.settlement_rpc import Confirmation, SolanaRpcClient
from spendgate.clients.signer import SignerActivity, TurnkeySigner
from spendgate.models import ExecutionPlan, Intent, WalletConfig


class ExecutionEngine(Protocol):
    async def build_transaction(
        self, intent: Intent, plan: ExecutionPlan | None,
    ) -> BuiltTransaction: ...


class SignerClient(Protocol):
    async def sign_raw_payload(
        self, unsigned_transaction: str, wallet: WalletConfig,
    ) -> SignerActivity: ...


class SettlementClient(Protocol):
    async def submit(self, signed_transaction: str) -> str: ...

    async def confirm(self, signature: str) -> Confirmation: ...


@dataclass
class Collaborators:
    engine: ExecutionEngine
    signer: SignerClient
    settlement: SettlementClient

    @classmethod
    def from_settings(cls) -> "Collaborators":
        return cls(
            engine=HttpExecutionEngine(),
            signer=TurnkeySigner(),
            settlement=SolanaRpcClient(),
        )


__all__ = [
    "BuiltTransaction",
    "Collaborators",
    "Confirmation",
    "ExecutionEngine",
    "HttpExecutionEngine",
    "SettlementClient",
    "SignerActivity",
    "SignerClient",
    "SolanaRpcClient",
    "TurnkeySigner",
]
