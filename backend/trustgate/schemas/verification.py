from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import datetime

from trustgate.schemas.common import (
    Severity,
    RiskCategory,
    RiskComponent,
    ValidationStatus,
    VerificationStatus,
    BusinessVerificationStatus,
    ComplianceFlagType,
)


class ExtractedFields(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[str] = None

    class Config:
        extra = "allow"


class DocumentRecord(BaseModel):
    id: str
    file_hash: Optional[str] = None
    validation_status: ValidationStatus = ValidationStatus.pending
    quality_score: Optional[float] = Field(default=None, ge=0, le=100)
    ocr_confidence: Optional[float] = Field(default=None, ge=0, le=100)
    fraud_indicators: List[str] = Field(default_factory=list)
    extracted_data: Optional[ExtractedFields] = None
    original_file_name: Optional[str] = None
    uploaded_at: datetime


class DocumentRef(BaseModel):
    document_id: str
    verification_id: str


class AccountRecord(BaseModel):
    user_id: str
    email: Optional[str] = None
    created_at: datetime
    email_confirmed_at: Optional[datetime] = None


class BusinessRecord(BaseModel):
    id: str
    name: Optional[str] = None
    created_at: Optional[datetime] = None
    verification_status: BusinessVerificationStatus = BusinessVerificationStatus.pending
    description: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address_line_1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None


class VerificationRecord(BaseModel):
    id: str
    user_id: str
    business_id: Optional[str] = None
    submitted_at: datetime
    initiated_at: Optional[datetime] = None
    status: VerificationStatus = VerificationStatus.pending
    geo_country: Optional[str] = None
    documents: List[DocumentRecord] = Field(default_factory=list)
    business: Optional[BusinessRecord] = None
    account: Optional[AccountRecord] = None


class RiskFactor(BaseModel):
    type: str
    category: RiskComponent
    severity: Severity
    impact: float = Field(ge=0, le=100)
    confidence: float = Field(ge=0, le=100)
    description: str = ""
    source: str = ""


class RiskAssessmentResult(BaseModel):
    verification_id: str
    overall_score: float
    risk_category: RiskCategory
    component_scores: Dict[RiskComponent, float]
    risk_factors: List[RiskFactor] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    requires_manual_review: bool
    auto_approval_eligible: bool
    confidence: float
    assessed_at: datetime


class FraudIndicator(BaseModel):
    type: str
    severity: Severity
    score: float
    description: str
    evidence: Dict[str, Any] = Field(default_factory=dict)
    detection_method: str


class ComplianceFlag(BaseModel):
    type: ComplianceFlagType
    severity: Severity
    description: str
    source: str
    requires_escalation: bool = False
