from cash_snapshot.models.account import Account, PlaidItem, Transaction
from cash_snapshot.models.balance import AccountBalance
from cash_snapshot.models.recurring import RecurringTransaction
from cash_snapshot.models.user import User

__all__ = ["Account", "AccountBalance", "PlaidItem", "RecurringTransaction", "Transaction", "User"]
