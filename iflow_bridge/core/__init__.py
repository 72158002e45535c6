from .models import ModelRegistry
from .pacing import PacingPolicy, RequestLedger
from .prompt import build_prompt
from .session import Session, SessionHandle
from .session_manager import SessionManager

__all__ = [
    "ModelRegistry",
    "PacingPolicy",
    "RequestLedger",
    "Session",
    "SessionHandle",
    "SessionManager",
    "build_prompt",
]
