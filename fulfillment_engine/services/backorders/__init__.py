"""
Backorder resolution service package.
"""
