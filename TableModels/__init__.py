from .base import Base, metadata
from .fund import Fund
from .deal import Deal
from .fund_allocation import FundAllocation
from .capital_call import CapitalCall
from .payment import CapitalCallPayment
