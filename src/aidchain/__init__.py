"""aidchain - humanitarian-aid delivery authorization and fulfillment.

Coordinates the hand-off of aid items from warehouse to beneficiary through
a multi-actor approval chain with segregation of duties, an append-only
audit trail and inventory deduction tied to specific delivery states.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
