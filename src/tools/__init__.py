"""
External service clients for the content scheduler.

- GenerationClient: image/video generation via the Laozhang.ai API
- LateClient: social publishing via the Late (getlate.dev) API
"""

from src.tools.generation_client import GenerationClient
from src.tools.late_client import LateClient

__all__ = [
    "GenerationClient",
    "LateClient",
]
