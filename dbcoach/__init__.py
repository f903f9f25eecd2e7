"""DB.Coach: streaming LLM database schema generation."""

__version__ = "0.1.0"

from .coach import DBCoach
from .schemas.streaming import SchemaFlavor

__all__ = ["DBCoach", "SchemaFlavor"]
