# exceptions.py
from fastapi import HTTPException, status
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)

class MedTrackException(Exception):
    """Base exception for MedTrack application"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

class ValidationError(MedTrackException):
    """Raised when data validation fails"""
    pass

class MedicationNotFoundError(MedTrackException):
    """Raised when a medication record does not exist"""
    pass

class BarcodeNotFoundError(MedTrackException):
    """Raised when no medication carries the scanned barcode"""
    pass

class BarcodeConflictError(MedTrackException):
    """Raised when a barcode write loses a uniqueness race; retry generation"""
    pass

class BarcodeGenerationError(MedTrackException):
    """Raised when no unique barcode could be committed"""
    pass

class ConcurrentUpdateError(MedTrackException):
    """Raised when a medication changed between the safety check and the write"""
    pass

class DoseNotPermittedError(MedTrackException):
    """Raised when the dosing safety verdict rejects a dose"""
    def __init__(self, verdict):
        self.verdict = verdict
        super().__init__(verdict.reason, {"verdict": verdict.model_dump(mode="json")})

def create_http_exception(
    status_code: int,
    message: str,
    details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    """Create standardized HTTP exception"""
    return HTTPException(
        status_code=status_code,
        detail={
            "error": True,
            "message": message,
            "details": details or {},
            "timestamp": str(datetime.now(timezone.utc))
        }
    )

# Common HTTP exceptions
def validation_exception(message: str, details: Optional[Dict] = None):
    return create_http_exception(status.HTTP_400_BAD_REQUEST, message, details)

def not_found_exception(message: str, details: Optional[Dict] = None):
    return create_http_exception(status.HTTP_404_NOT_FOUND, message, details)

def conflict_exception(message: str, details: Optional[Dict] = None):
    return create_http_exception(status.HTTP_409_CONFLICT, message, details)

def forbidden_exception(message: str = "Access forbidden"):
    return create_http_exception(status.HTTP_403_FORBIDDEN, message)

def internal_server_exception(message: str = "Internal server error"):
    logger.error(f"Internal server error: {message}")
    return create_http_exception(status.HTTP_500_INTERNAL_SERVER_ERROR, message)
