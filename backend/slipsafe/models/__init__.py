from .accounts import User, SessionToken
from .merchants import Merchant, MerchantUser
from .ledger import Purchase
from .claims import Claim, ClaimVerification
from .fraud import FraudEvent

__all__ = [
    'User', 'SessionToken',
    'Merchant', 'MerchantUser',
    'Purchase',
    'Claim', 'ClaimVerification',
    'FraudEvent',
]
