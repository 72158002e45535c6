from .server import create_app
from .formats import AnthropicFormat, OpenAIFormat, PayloadFormat, get_format
from .metrics import RequestLog

__all__ = [
    "create_app",
    "RequestLog",
    "PayloadFormat",
    "OpenAIFormat",
    "AnthropicFormat",
    "get_format",
]
