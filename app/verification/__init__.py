from app.verification.errors import VerificationError
from app.verification.types import BookingToken, FlowStage, RecordStatus, SubjectKey, TokenStatus, VerificationRecord

__all__ = [
    "BookingToken",
    "FlowStage",
    "RecordStatus",
    "SubjectKey",
    "TokenStatus",
    "VerificationError",
    "VerificationRecord",
]
