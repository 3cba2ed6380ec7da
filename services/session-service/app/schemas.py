from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Phase(str, Enum):
    TRANSMISSION = "transmission"
    REFLECTION = "reflection"
    VALIDATION = "validation"
    EMERGENCE = "emergence"
    ENDED = "ended"


class EndReason(str, Enum):
    COMPLETED = "completed"
    RECEIVER_END_COMPLETE = "receiver_end_complete"
    GIVER_SAFETY_EXIT = "giver_safety_exit"
    TECHNICAL_FAILURE = "technical_failure"
    RECEIVER_NO_SHOW = "receiver_no_show"
    GIVER_NO_SHOW = "giver_no_show"


class ExtensionStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TIMEOUT = "timeout"
    PAYMENT_FAILED = "payment_failed"


class GiverResponse(str, Enum):
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TIMEOUT = "timeout"


class NegotiationState(str, Enum):
    IDLE = "idle"
    CHECKING_AVAILABILITY = "checking_availability"
    RECEIVER_PROMPT = "receiver_prompt"
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TIMEOUT = "timeout"
    PAYMENT_FAILED = "payment_failed"


# ---- session state ----

class SessionStateRequest(BaseModel):
    booking_id: str = Field(..., min_length=1)


class SessionStateResponse(BaseModel):
    phase: Phase
    giver_can_speak: bool
    seconds_remaining_in_phase: int
    total_elapsed_seconds: int


# ---- settlement ----

class FinalizeRequest(BaseModel):
    booking_id: str = Field(..., min_length=1)
    end_reason: EndReason


class FinalizeResponse(BaseModel):
    success: bool = True
    payout_net_cents: int
    refund_gross_cents: int
    credit_amount_cents: int
    elapsed_seconds: int


# ---- extensions ----

class ExtensionCheckRequest(BaseModel):
    booking_id: str = Field(..., min_length=1)


class ExtensionCheckResponse(BaseModel):
    booking_id: str
    state: NegotiationState
    seconds_remaining: int
    giver_available: bool = False
    extension_id: str | None = None


class CreateExtensionRequest(BaseModel):
    booking_id: str = Field(..., min_length=1)
    amount_cents: int = Field(..., gt=0)


class RespondExtensionRequest(BaseModel):
    response: GiverResponse


class ExtensionResponse(BaseModel):
    extension_id: str
    booking_id: str
    requested_by: str
    requested_at: datetime
    expires_at: datetime
    amount_cents: int
    giver_response: GiverResponse | None = None
    giver_responded_at: datetime | None = None
    status: ExtensionStatus
    payment_reference: str | None = None


# ---- payouts ----

class AccountStatusResponse(BaseModel):
    onboarding_complete: bool = False
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False
