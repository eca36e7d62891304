# config.py
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./medtrack.db"

    # Security
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 1440

    # Application
    app_name: str = "MedTrack"
    debug: bool = False
    log_dir: str = "logs"

    # Dosing safety
    local_utc_offset_minutes: int = 330  # UTC+5:30
    low_stock_threshold: int = 3
    dose_update_retries: int = 3
    log_rejected_dose_attempts: bool = False

    # Barcodes
    barcode_max_suffix: int = 999
    barcode_commit_retries: int = 3

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Security validations
    @field_validator('secret_key')
    @classmethod
    def secret_key_must_be_strong(cls, v):
        if len(v) < 32:
            raise ValueError('Secret key must be at least 32 characters long')
        return v

    @field_validator('database_url')
    @classmethod
    def database_url_must_be_valid(cls, v):
        if not v.startswith(('postgresql://', 'sqlite://')):
            raise ValueError('Database URL must be PostgreSQL or SQLite')
        return v

    @field_validator('local_utc_offset_minutes')
    @classmethod
    def offset_must_be_real(cls, v):
        if not -14 * 60 <= v <= 14 * 60:
            raise ValueError('Local UTC offset must be within +/-14 hours')
        return v

settings = Settings()
