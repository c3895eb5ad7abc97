"""Models package."""

from .user import User
from .transaction import Transaction
from .rate_limit_counter import RateLimitCounter
from .credit_ledger import CreditLedger
