from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field


Money = Annotated[Decimal, Field(max_digits=15, decimal_places=2)]
Rate = Annotated[Decimal, Field(ge=0, le=100, max_digits=5, decimal_places=2)]


class AgentStatus(str, Enum):
    PENDING_APPLICATION = "pending_application"
    APPLICATION_APPROVED = "application_approved"
    CODE_GENERATED = "code_generated"
    CREDENTIALS_SENT = "credentials_sent"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class AgentTier(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"


class ReferralCodeStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    SUSPENDED = "suspended"


class ReferralCodeType(str, Enum):
    STANDARD = "standard"
    PROMOTIONAL = "promotional"
    LIMITED_TIME = "limited_time"
    VIP = "vip"


class UsageStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class EarningType(str, Enum):
    REFERRAL_COMMISSION = "referral_commission"
    BONUS = "bonus"
    PENALTY = "penalty"
    ADJUSTMENT = "adjustment"
    PROMOTION_BONUS = "promotion_bonus"


class EarningStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REVIEW = "review"


class PayoutMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    PLANETTALK_CREDIT = "planettalk_credit"


class Reservation(str, Enum):
    HELD = "held"
    RELEASED = "released"
    CONSUMED = "consumed"


class AdjustmentKind(str, Enum):
    BONUS = "bonus"
    PENALTY = "penalty"
    CORRECTION = "correction"
    REFUND = "refund"
    FEE = "fee"
    OTHER = "other"


class UnusableReason(str, Enum):
    UNKNOWN = "unknown"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    AGENT_INACTIVE = "agent_inactive"


class BulkPayoutAction(str, Enum):
    APPROVE = "approve"
    REVIEW = "review"


class UploadRowStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# Requests


class RegisterAgentRequest(BaseModel):
    user_id: UUID
    commission_rate: Optional[Rate] = None
    tier: AgentTier = AgentTier.BRONZE
    status: AgentStatus = AgentStatus.ACTIVE


class CommissionRateRequest(BaseModel):
    commission_rate: Rate


class AgentStatusRequest(BaseModel):
    status: AgentStatus


class SuspendEarningsRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    admin_notes: Optional[str] = None


class CodeOptions(BaseModel):
    code: Optional[str] = Field(default=None, max_length=20, pattern=r"^[A-Za-z0-9]+$")
    type: ReferralCodeType = ReferralCodeType.STANDARD
    description: Optional[str] = Field(default=None, max_length=255)
    bonus_commission_rate: Optional[Rate] = None
    max_uses: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None
    status: ReferralCodeStatus = ReferralCodeStatus.ACTIVE

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "type": "promotional",
            "description": "Spring campaign",
            "max_uses": 100,
            "expires_at": "2026-12-31T23:59:59Z",
        }
    })


class CodeStatusRequest(BaseModel):
    status: ReferralCodeStatus


class ReferredUser(BaseModel):
    user_id: Optional[UUID] = None
    name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=20)


class RecordUsageRequest(BaseModel):
    referred_user: ReferredUser = Field(default_factory=ReferredUser)
    idempotency_key: Optional[str] = Field(default=None, max_length=100, description="Unique key to prevent duplicates")
    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = None


class ConfirmUsageRequest(BaseModel):
    reference_amount: Money = Field(..., ge=0, description="Billing amount the commission is computed from")


class CreateEarningRequest(BaseModel):
    agent_id: UUID
    type: EarningType = EarningType.BONUS
    amount: Money
    status: EarningStatus = EarningStatus.PENDING
    description: Optional[str] = Field(default=None, max_length=255)
    reference_id: Optional[str] = Field(default=None, max_length=100)
    idempotency_key: Optional[str] = Field(default=None, max_length=100)


class EarningAdjustmentRequest(BaseModel):
    amount: Money = Field(..., description="Positive for credits, negative for deductions")
    kind: AdjustmentKind
    reason: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)
    reference_id: Optional[str] = Field(default=None, max_length=100)


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    performed_by: Optional[str] = None


class BulkEarningsRequest(BaseModel):
    earning_ids: list[UUID] = Field(..., min_length=1)
    reason: Optional[str] = Field(default=None, max_length=500)


class EarningUploadEntry(BaseModel):
    agent_code: str = Field(..., min_length=1, max_length=20)
    amount: Money = Field(..., gt=0, le=10000)
    type: EarningType = EarningType.REFERRAL_COMMISSION
    description: str = Field(..., min_length=1, max_length=255)
    reference_id: Optional[str] = Field(default=None, max_length=100, description="External transaction or order id")
    commission_rate: Optional[Rate] = None
    earned_at: Optional[datetime] = Field(default=None, description="Defaults to the upload time")


class BulkEarningsUploadRequest(BaseModel):
    earnings: list[EarningUploadEntry] = Field(..., min_length=1, max_length=1000)
    batch_description: Optional[str] = Field(default=None, max_length=500)
    auto_confirm: bool = Field(default=False, description="Create entries confirmed instead of pending")
    metadata: dict = Field(default_factory=dict)


class BankAccount(BaseModel):
    bank_name: str = Field(..., min_length=1)
    branch_name_or_code: Optional[str] = None
    account_name: str = Field(..., min_length=1)
    account_number_or_iban: str = Field(..., min_length=1)
    swift_bic_code: Optional[str] = None
    currency: Optional[str] = None
    bank_country: Optional[str] = None
    additional_notes: Optional[str] = None


class PlanetTalkCredit(BaseModel):
    planettalk_mobile: str = Field(..., min_length=1)
    account_name: Optional[str] = None


class PaymentDetails(BaseModel):
    bank_account: Optional[BankAccount] = None
    planettalk_credit: Optional[PlanetTalkCredit] = None


class PayoutRequest(BaseModel):
    agent_id: UUID
    amount: Money
    method: PayoutMethod = PayoutMethod.BANK_TRANSFER
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    description: Optional[str] = Field(default=None, max_length=500)
    idempotency_key: Optional[str] = Field(default=None, max_length=100)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "agent_id": "550e8400-e29b-41d4-a716-446655440000",
            "amount": "60.00",
            "method": "planettalk_credit",
            "payment_details": {"planettalk_credit": {"planettalk_mobile": "+263771234567"}},
        }
    })


class ApprovePayoutRequest(BaseModel):
    staff_id: UUID
    fees: Optional[Money] = Field(default=None, ge=0)
    admin_notes: Optional[str] = None
    transaction_id: Optional[str] = Field(default=None, max_length=100)


class ReviewPayoutRequest(BaseModel):
    review_message: str = Field(..., min_length=1)
    staff_id: Optional[UUID] = None
    admin_notes: Optional[str] = None


class IndividualReviewMessage(BaseModel):
    payout_id: UUID
    review_message: str = Field(..., min_length=1)


class BulkPayoutRequest(BaseModel):
    payout_ids: list[UUID] = Field(..., min_length=1)
    action: BulkPayoutAction
    staff_id: UUID
    admin_notes: Optional[str] = None
    review_message: Optional[str] = None
    individual_messages: list[IndividualReviewMessage] = Field(default_factory=list)


# Read models


class AgentRead(BaseModel):
    id: UUID
    user_id: UUID
    agent_code: str
    status: AgentStatus
    tier: AgentTier
    commission_rate: Decimal
    total_earnings: Decimal
    pending_balance: Decimal
    available_balance: Decimal
    total_referrals: int
    active_referrals: int
    earnings_suspended: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReferralCodeRead(BaseModel):
    id: UUID
    agent_id: UUID
    code: str
    status: ReferralCodeStatus
    type: ReferralCodeType
    description: Optional[str] = None
    bonus_commission_rate: Optional[Decimal] = None
    max_uses: Optional[int] = None
    current_uses: int
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def remaining_uses(self) -> Optional[int]:
        if self.max_uses is None:
            return None
        return max(0, self.max_uses - self.current_uses)


class CodeValidation(BaseModel):
    valid: bool
    code: str
    reason: Optional[UnusableReason] = None
    message: str
    referral_code: Optional[ReferralCodeRead] = None


class ReferralUsageRead(BaseModel):
    id: UUID
    referral_code_id: UUID
    status: UsageStatus
    referred_user_id: Optional[UUID] = None
    referred_user_name: Optional[str] = None
    referred_user_email: Optional[str] = None
    referred_user_phone: Optional[str] = None
    commission_rate: Decimal
    commission_earned: Optional[Decimal] = None
    idempotency_key: Optional[str] = None
    used_at: datetime
    confirmed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AgentEarningsRead(BaseModel):
    id: UUID
    agent_id: UUID
    referral_usage_id: Optional[UUID] = None
    type: EarningType
    status: EarningStatus
    amount: Decimal
    currency: str
    commission_rate: Optional[Decimal] = None
    description: Optional[str] = None
    reference_id: Optional[str] = None
    status_reason: Optional[str] = None
    earned_at: datetime
    confirmed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PayoutRead(BaseModel):
    id: UUID
    agent_id: UUID
    status: PayoutStatus
    method: PayoutMethod
    reservation: Reservation
    amount: Decimal
    fees: Decimal
    net_amount: Decimal
    currency: str
    description: Optional[str] = None
    payment_details: dict = Field(default_factory=dict)
    transaction_id: Optional[str] = None
    admin_notes: Optional[str] = None
    review_message: Optional[str] = None
    processed_by: Optional[UUID] = None
    requested_at: datetime
    approved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UsageConfirmation(BaseModel):
    usage: ReferralUsageRead
    earning: AgentEarningsRead
    message: str


class AgentBalance(BaseModel):
    agent_id: UUID
    total_earnings: Decimal
    pending_balance: Decimal
    available_balance: Decimal

    model_config = ConfigDict(from_attributes=True)


class BalanceMismatch(BaseModel):
    field: str
    expected: Decimal
    actual: Decimal


class ReconciliationReport(BaseModel):
    agent_id: UUID
    expected: AgentBalance
    actual: AgentBalance
    paid_earnings: Decimal
    reserved_payouts: Decimal
    consumed_payouts: Decimal
    mismatches: list[BalanceMismatch] = Field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.mismatches


class BulkItemFailure(BaseModel):
    id: UUID
    error: str


class BulkResult(BaseModel):
    succeeded: list[UUID] = Field(default_factory=list)
    failed: list[BulkItemFailure] = Field(default_factory=list)

    @computed_field
    @property
    def summary(self) -> str:
        return f"{len(self.succeeded)} succeeded, {len(self.failed)} failed"


class UploadRowResult(BaseModel):
    row: int
    agent_code: str
    status: UploadRowStatus
    amount: Decimal
    earning_id: Optional[UUID] = None
    error: Optional[str] = None


class BulkUploadResult(BaseModel):
    batch_id: str
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    total_amount: Decimal = Decimal("0.00")
    updated_agents: list[str] = Field(default_factory=list)
    invalid_agent_codes: list[str] = Field(default_factory=list)
    duplicate_references: list[str] = Field(default_factory=list)
    details: list[UploadRowResult] = Field(default_factory=list)


# Reports


class AmountBreakdown(BaseModel):
    key: str
    count: int
    amount: Decimal


class EarningsSummary(BaseModel):
    agent_id: UUID
    balance: AgentBalance
    by_type: list[AmountBreakdown]
    by_status: list[AmountBreakdown]
    recent: list[AgentEarningsRead]


class PayoutStats(BaseModel):
    total_count: int
    total_amount: Decimal
    by_status: list[AmountBreakdown]
    by_method: list[AmountBreakdown]
    average_approval_seconds: Optional[float] = None


class SystemEarningsSummary(BaseModel):
    agents: int
    total_earnings: Decimal
    pending_balance: Decimal
    available_balance: Decimal
    by_status: list[AmountBreakdown]
    by_type: list[AmountBreakdown]
