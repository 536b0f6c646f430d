from .accounts import Account, LedgerTransaction, TXN_DEBIT, TXN_CREDIT
from .keys import Key, KeyDevice
from .referrals import ReferralCode, ReferralRedemption

__all__ = [
    'Account', 'LedgerTransaction', 'TXN_DEBIT', 'TXN_CREDIT',
    'Key', 'KeyDevice',
    'ReferralCode', 'ReferralRedemption',
]
