from .config import SafetyConfig
from .arbiter import SafetyArbiter, SafetyLedgerEntry

__all__ = ["SafetyConfig", "SafetyArbiter", "SafetyLedgerEntry"]
