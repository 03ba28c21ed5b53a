"""
Inventory ledger service package.
"""
