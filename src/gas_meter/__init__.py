"""
Metered transaction-fee sponsorship.

Projects hold prepaid per-asset balances that are credited by on-chain
deposits (`DepositReconciler`) or x402 payments (`PaymentVerifier`) and
debited once per relayed transaction (`MeteringGateway`).
"""

from .chain import SolanaRpcClient
from .config import (
    AssetConfig,
    PricingConfig,
    ReconcilerConfig,
    ThrottleConfig,
    UpstreamConfig,
    default_assets,
    load_env,
)
from .errors import (
    ConfigError,
    ErrorCode,
    GasMeterError,
    InsufficientBalanceError,
    PaymentVerificationFailedError,
    ProjectInactiveError,
    ProjectNotFoundError,
    RateLimitedError,
    ReconciliationTransientError,
    UnauthorizedError,
    UpstreamBroadcastError,
    UpstreamSigningError,
    ValidationError,
    is_retryable,
)
from .facilitator import Facilitator, HTTPFacilitatorClient, Settlement
from .gateway import FundingShortfall, MeteringGateway, RelayResult
from .ledger import LedgerStore, MemoryLedgerStore, PostgresLedgerStore
from .logging import configure_logging, get_logger
from .models import Asset, CreditResult, FundingRequirement, Project, Reservation, Tier
from .payments import PaymentResult, PaymentVerifier, VerificationResult
from .policy import FundingPolicy, PayAsYouGoPolicy, SponsoredPolicy, policy_for
from .reconciler import DepositReconciler, ReconcileReport
from .signer import FeePayer, KoraFeePayer
from .throttle import RequestThrottle, TokenBucket

__all__ = [
    # Domain
    "Asset",
    "Tier",
    "Project",
    "CreditResult",
    "Reservation",
    "FundingRequirement",
    # Ledger
    "LedgerStore",
    "MemoryLedgerStore",
    "PostgresLedgerStore",
    # Components
    "DepositReconciler",
    "ReconcileReport",
    "PaymentVerifier",
    "VerificationResult",
    "PaymentResult",
    "MeteringGateway",
    "RelayResult",
    "FundingShortfall",
    "FundingPolicy",
    "SponsoredPolicy",
    "PayAsYouGoPolicy",
    "policy_for",
    "RequestThrottle",
    "TokenBucket",
    # Adapters
    "SolanaRpcClient",
    "FeePayer",
    "KoraFeePayer",
    "Facilitator",
    "HTTPFacilitatorClient",
    "Settlement",
    # Config
    "AssetConfig",
    "PricingConfig",
    "ReconcilerConfig",
    "ThrottleConfig",
    "UpstreamConfig",
    "default_assets",
    "load_env",
    # Errors
    "ErrorCode",
    "GasMeterError",
    "ValidationError",
    "ProjectNotFoundError",
    "ProjectInactiveError",
    "InsufficientBalanceError",
    "PaymentVerificationFailedError",
    "UpstreamSigningError",
    "UpstreamBroadcastError",
    "RateLimitedError",
    "ReconciliationTransientError",
    "UnauthorizedError",
    "ConfigError",
    "is_retryable",
    # Logging
    "get_logger",
    "configure_logging",
]
