# database.py
import enum
import secrets
from sqlalchemy import create_engine, Column, Integer, String, DateTime, Boolean, Text, ForeignKey, Index, JSON, Enum
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from datetime import datetime, timezone

from config import settings

DATABASE_URL = settings.database_url

if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        echo=False
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=20,
        max_overflow=30,
        pool_recycle=3600,
        pool_pre_ping=True,
        echo=False  # Set to True for SQL debugging
    )
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_object_id() -> str:
    """24-char hex identifier, same shape as a document-store ObjectId"""
    return secrets.token_hex(12)


class UserRole(str, enum.Enum):
    PATIENT = "patient"
    CAREGIVER = "caregiver"


class TimingRelation(str, enum.Enum):
    BEFORE_FOOD = "before_food"
    AFTER_FOOD = "after_food"
    WITH_FOOD = "with_food"
    EMPTY_STOMACH = "empty_stomach"
    ANYTIME = "anytime"


class MedicationStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class DosageUnit(str, enum.Enum):
    MG = "mg"
    G = "g"
    ML = "ml"
    TABLETS = "tablets"
    CAPSULES = "capsules"
    DROPS = "drops"
    PUFFS = "puffs"
    UNITS = "units"


class MealType(str, enum.Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    SNACK = "snack"


class ActivityType(str, enum.Enum):
    DOSE_TAKEN = "dose_taken"
    DOSE_BLOCKED = "dose_blocked"
    LOW_STOCK = "low_stock"
    MEDICATION_ADDED = "medication_added"
    MEDICATION_PAUSED = "medication_paused"
    MEDICATION_RESUMED = "medication_resumed"
    MEDICATION_REMOVED = "medication_removed"


class ActivityPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# User model
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    hashed_password = Column(String, nullable=False)
    role = Column(Enum(UserRole), default=UserRole.PATIENT, nullable=False, index=True)
    caregiver_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)

    caregiver = relationship("User", remote_side=[id], backref="patients")
    meal_times = relationship("MealTime", back_populates="patient", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_user_role_active', 'role', 'is_active'),
    )


# Medication model
class Medication(Base):
    __tablename__ = "medications"

    id = Column(String(24), primary_key=True, default=new_object_id)
    patient_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    caregiver_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(100), nullable=False)
    dosage = Column(String, nullable=False)
    dosage_unit = Column(Enum(DosageUnit), nullable=False)
    frequency = Column(Integer, nullable=False)
    timing_relation = Column(Enum(TimingRelation), nullable=False)
    total_quantity = Column(Integer, nullable=False)
    remaining_quantity = Column(Integer, nullable=False)
    expiry_date = Column(DateTime(timezone=True), nullable=False, index=True)
    instructions = Column(Text, nullable=True)
    status = Column(Enum(MedicationStatus), default=MedicationStatus.ACTIVE, nullable=False, index=True)
    last_taken = Column(DateTime(timezone=True), nullable=True)
    barcode_data = Column(String(32), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    patient = relationship("User", foreign_keys=[patient_id])
    caregiver = relationship("User", foreign_keys=[caregiver_id])
    # Deleting a medication keeps its history; rows lose the link only
    activities = relationship("Activity", back_populates="medication")

    __table_args__ = (
        Index('idx_medication_patient_status', 'patient_id', 'status'),
    )

    @property
    def days_left(self) -> int:
        return max(0, self.remaining_quantity // self.frequency)


# Meal times, one row per patient and meal
class MealTime(Base):
    __tablename__ = "meal_times"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    meal_id = Column(Enum(MealType), nullable=False)
    name = Column(String, nullable=False)
    time = Column(String(5), nullable=False)  # 24-hour HH:MM, patient local time
    enabled = Column(Boolean, default=True)
    is_optional = Column(Boolean, default=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    patient = relationship("User", back_populates="meal_times")

    __table_args__ = (
        Index('idx_meal_patient_meal', 'patient_id', 'meal_id', unique=True),
    )


# Append-only activity log; dose_taken rows are the source of truth for last dose
class Activity(Base):
    __tablename__ = "activities"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(Enum(ActivityType), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    caregiver_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    medication_id = Column(String(24), ForeignKey("medications.id", ondelete="SET NULL"), nullable=True, index=True)
    message = Column(String(500), nullable=False)
    priority = Column(Enum(ActivityPriority), default=ActivityPriority.LOW, nullable=False, index=True)
    is_read = Column(Boolean, default=False, index=True)
    event_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)

    medication = relationship("Medication", back_populates="activities")
    patient = relationship("User", foreign_keys=[patient_id])

    __table_args__ = (
        Index('idx_activity_patient_created', 'patient_id', 'created_at'),
        Index('idx_activity_caregiver_created', 'caregiver_id', 'created_at'),
        Index('idx_activity_patient_med_type', 'patient_id', 'medication_id', 'type'),
    )


# Dependency to get DB session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# Create tables
def create_tables():
    Base.metadata.create_all(bind=engine)
