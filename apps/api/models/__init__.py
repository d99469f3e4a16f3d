"""Models package."""

from .issuer import IssuerAccount
from .credential import Credential
from .credit_transaction import CreditTransaction
