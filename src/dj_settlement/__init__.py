"""
Ledger and settlement engine for marketplace operators.

Records operator money movements, collects win fees when trips start, charges UPI
Autopay mandates and splits collected fees across the franchise hierarchy.
"""

__version__ = "0.1.0"
