# models.py
from pydantic import BaseModel, EmailStr, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

from database import (
    UserRole, TimingRelation, MedicationStatus, DosageUnit, MealType,
    ActivityType, ActivityPriority,
)

class UserCreate(BaseModel):
    username: str
    email: EmailStr
    password: str
    full_name: Optional[str] = None
    role: UserRole = UserRole.PATIENT

class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    full_name: Optional[str]
    role: UserRole
    caregiver_id: Optional[int]
    is_active: bool

    class Config:
        from_attributes = True

class Token(BaseModel):
    access_token: str
    token_type: str

class TokenData(BaseModel):
    username: Optional[str] = None

# Medication models
class MedicationCreate(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    dosage: str = Field(pattern=r"^\d+(\.\d+)?$")
    dosage_unit: DosageUnit
    frequency: int = Field(ge=1, le=6)
    timing_relation: TimingRelation
    quantity: int = Field(ge=1)
    expiry_date: datetime
    instructions: Optional[str] = Field(default=None, max_length=500)

class MedicationResponse(BaseModel):
    id: str
    patient_id: int
    caregiver_id: Optional[int]
    name: str
    dosage: str
    dosage_unit: DosageUnit
    frequency: int
    timing_relation: TimingRelation
    total_quantity: int
    remaining_quantity: int
    expiry_date: datetime
    instructions: Optional[str]
    status: MedicationStatus
    last_taken: Optional[datetime]
    barcode_data: Optional[str]
    days_left: int

    class Config:
        from_attributes = True

class MedicationStatusUpdate(BaseModel):
    status: MedicationStatus

class PatientLinkRequest(BaseModel):
    email: EmailStr

class DoseLogRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=500)
    override: bool = False

# Meal time models
class MealTimeEntry(BaseModel):
    time: str  # HH:MM, 24-hour
    enabled: bool = True

class MealTimeResponse(BaseModel):
    id: MealType
    name: str
    time: str
    display_time: str
    enabled: bool

# Dosing safety engine results
class DoseGateResult(BaseModel):
    can_take: bool
    next_dose_time: Optional[datetime] = None
    hours_remaining: Optional[int] = None

class MedicationWindow(BaseModel):
    meal_type: MealType
    meal_time: str
    window_start: str
    window_end: str
    is_current_window: bool = False

class TimingValidation(BaseModel):
    can_take: bool
    reason: str
    current_windows: List[MedicationWindow] = []
    next_window: Optional[MedicationWindow] = None
    time_until_next_window: Optional[str] = None

class SafetyVerdict(BaseModel):
    can_take: bool
    reason: str
    warnings: List[str] = []
    overridden: bool = False
    checks: Dict[str, bool] = {}
    last_taken: Optional[datetime] = None
    next_dose_time: Optional[datetime] = None
    hours_remaining: Optional[int] = None
    is_expired: bool = False
    timing_relation: TimingRelation
    current_windows: List[MedicationWindow] = []
    next_window: Optional[MedicationWindow] = None
    time_until_next_window: Optional[str] = None

class DoseLogResponse(BaseModel):
    medication_id: str
    medication_name: str
    taken_at: datetime
    remaining_quantity: int
    status: MedicationStatus
    days_left: int
    was_overridden: bool
    safety: SafetyVerdict

class BarcodeScanResponse(BaseModel):
    medication: MedicationResponse
    safety: SafetyVerdict

# Activity feed
class ActivityResponse(BaseModel):
    id: int
    type: ActivityType
    medication_id: Optional[str]
    medication_name: Optional[str]
    message: str
    priority: ActivityPriority
    is_read: bool
    time_ago: str
    created_at: datetime
    metadata: Dict[str, Any] = {}

class ActivityFeedResponse(BaseModel):
    activities: List[ActivityResponse]
    unread_count: int

class CaregiverNotificationResponse(ActivityResponse):
    title: str
    patient_id: int
    patient_name: Optional[str]

class CaregiverFeedResponse(BaseModel):
    notifications: List[CaregiverNotificationResponse]
    unread_count: int

# Caregiver dashboard
class PatientSummary(UserResponse):
    medications_count: int
    unread_alerts: int

class PatientDetailResponse(BaseModel):
    patient: UserResponse
    medications: List[MedicationResponse]

class BarcodeEntry(BaseModel):
    id: str
    patient_id: int
    patient_name: Optional[str]
    medication_name: str
    dosage: str
    frequency: str
    timing_relation: str
    barcode_data: Optional[str]
    created_at: datetime
