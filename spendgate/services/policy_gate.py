"""
Policy Gate — pure spend-limit and step-up-authentication evaluation.

No I/O and no side effects: callers pass a PolicyLimits snapshot (read from
the wallet record) plus the proposed amount. Hard caps are checked before
step-up requirements, so a transaction that is both over a limit and over
the 2FA threshold is reported as a limit violation.

Check order:
    0. wallet must be active
    1. per-transaction cap
    2. daily rolling cap    (current daily + amount > daily limit)
    3. monthly rolling cap  (current monthly + amount > monthly limit)
    4. blocked destination
    5. 2FA above threshold  (allowed, requires_2fa)
    6. biometric flag       (allowed, requires_biometric)
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from spendgate.models import WalletConfig

_DAY = timedelta(days=1)
_MONTH = timedelta(days=30)


@dataclass(frozen=True)
class PolicyLimits:
    per_transaction_cents: int
    daily_limit_cents: int
    monthly_limit_cents: int
    current_daily_cents: int = 0
    current_monthly_cents: int = 0
    spend_reset_at: datetime | None = None
    require_2fa_above_cents: int | None = None
    require_biometric: bool = False
    blocked_destinations: frozenset[str] = field(default_factory=frozenset)
    wallet_status: str = "active"

    @classmethod
    def from_wallet(cls, wallet: WalletConfig) -> "PolicyLimits":
        return cls(
            per_transaction_cents=wallet.per_transaction_limit_cents,
            daily_limit_cents=wallet.daily_limit_cents,
            monthly_limit_cents=wallet.monthly_limit_cents,
            current_daily_cents=wallet.current_daily_spend_cents or 0,
            current_monthly_cents=wallet.current_monthly_spend_cents or 0,
            spend_reset_at=wallet.spend_reset_at,
            require_2fa_above_cents=wallet.require_2fa_above_cents,
            require_biometric=bool(wallet.require_biometric),
            blocked_destinations=frozenset(wallet.blocked_destinations or ()),
            wallet_status=wallet.status,
        )


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: str | None = None
    requires_override: bool = False
    requires_2fa: bool = False
    requires_biometric: bool = False

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "requires_override": self.requires_override,
            "requires_2fa": self.requires_2fa,
            "requires_biometric": self.requires_biometric,
        }


def effective_spending(limits: PolicyLimits, now: datetime) -> tuple[int, int]:
    """Rolling (daily, monthly) counters, zeroed once their window has lapsed."""
    daily = limits.current_daily_cents
    monthly = limits.current_monthly_cents
    if limits.spend_reset_at is not None:
        elapsed = now - limits.spend_reset_at
        if elapsed > _DAY:
            daily = 0
        if elapsed > _MONTH:
            monthly = 0
    return daily, monthly


def _usd(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def evaluate_policy(
    limits: PolicyLimits,
    amount_cents: int | None,
    destination: str | None = None,
    *,
    now: datetime,
) -> PolicyDecision:
    """Evaluate one proposed transaction against the user's limits."""
    if limits.wallet_status != "active":
        return PolicyDecision(allowed=False, reason=f"Wallet is {limits.wallet_status}")

    if amount_cents:
        if amount_cents > limits.per_transaction_cents:
            return PolicyDecision(
                allowed=False,
                reason=f"Amount exceeds per-transaction limit of {_usd(limits.per_transaction_cents)}",
                requires_override=True,
            )

        daily, monthly = effective_spending(limits, now)

        if daily + amount_cents > limits.daily_limit_cents:
            return PolicyDecision(
                allowed=False,
                reason=f"Would exceed daily limit of {_usd(limits.daily_limit_cents)}",
                requires_override=True,
            )

        if monthly + amount_cents > limits.monthly_limit_cents:
            return PolicyDecision(
                allowed=False,
                reason=f"Would exceed monthly limit of {_usd(limits.monthly_limit_cents)}",
                requires_override=True,
            )

    if destination and destination in limits.blocked_destinations:
        return PolicyDecision(allowed=False, reason=f"Destination {destination} is blocked")

    if (
        amount_cents
        and limits.require_2fa_above_cents is not None
        and amount_cents > limits.require_2fa_above_cents
    ):
        return PolicyDecision(
            allowed=True,
            reason=f"Amount over {_usd(limits.require_2fa_above_cents)} requires 2FA",
            requires_2fa=True,
        )

    if limits.require_biometric:
        return PolicyDecision(allowed=True, requires_biometric=True)

    return PolicyDecision(allowed=True)
