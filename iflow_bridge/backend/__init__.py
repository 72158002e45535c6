from .acp import AcpBackend
from .base import Backend

__all__ = ["AcpBackend", "Backend"]
