"""Чат-релей с защитой от злоупотреблений."""

__version__ = "1.0.0"
__status__ = "production"

from .config import settings
