"""Core domain logic for cross-chain x402 payments."""

from .authorization import (
    AuthorizationError,
    PaymentPlan,
    build_payment_plan,
    build_proxy_call,
    get_token_domain,
    sign_typed_data,
)
from .deadlines import (
    DepositParams,
    get_deposit_params,
    validate_fill_deadline,
    validate_quote_timestamp,
)
from .facilitator import FacilitatorClient, FacilitatorError
from .quotes import (
    PaymentForm,
    Quote,
    QuoteError,
    QuoteTracker,
    create_mock_quote,
    fetch_across_quote,
    normalize_quote,
)
from .requirements import (
    NoMatchingRequirementError,
    PaymentRequirement,
    select_payment_requirement,
)
from .settlement import (
    SettlementError,
    SettlementOrchestrator,
    Step,
    TransactionStatus,
    UserRejectedError,
)

__all__ = [
    "AuthorizationError",
    "DepositParams",
    "FacilitatorClient",
    "FacilitatorError",
    "NoMatchingRequirementError",
    "PaymentForm",
    "PaymentPlan",
    "PaymentRequirement",
    "Quote",
    "QuoteError",
    "QuoteTracker",
    "SettlementError",
    "SettlementOrchestrator",
    "Step",
    "TransactionStatus",
    "UserRejectedError",
    "build_payment_plan",
    "build_proxy_call",
    "create_mock_quote",
    "fetch_across_quote",
    "get_deposit_params",
    "get_token_domain",
    "normalize_quote",
    "select_payment_requirement",
    "sign_typed_data",
    "validate_fill_deadline",
    "validate_quote_timestamp",
]
